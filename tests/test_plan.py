"""Tests for the pure diff between provider data and local rows.

USE THIS FILE FOR:
- Create/update/deactivate/reactivate/remove classification
- Tolerant text comparison
- Firm type, name and parent rules
- Integrity pass on provider data
"""
from asserts import assert_equal, assert_false, assert_true
from fixtures import *  # noqa: F401, F403

from firmsync.model import Address, Firm, FirmType, Office, SyncTally
from firmsync.provider import ProviderDataset, ProviderFirm, ProviderOffice, parse_snapshot
from firmsync.reconcile import build_plan, check_integrity

LSP = FirmType.LEGAL_SERVICES_PROVIDER
ADDRESS = Address('1 High Street', None, None, 'London', 'SW1A 1AA')


def local_firm(code, name=None, type=LSP, parent=None, active=True, id=None):
    return Firm(id=id or hash(code) % 1000, code=code, name=name or f'Firm {code}', type=type,
                parent_code=parent, active=active)


def local_office(code, firm_code, address=ADDRESS, active=True):
    return Office(id=hash(code) % 1000, code=code, firm_code=firm_code, address=address, active=active)


def plan_for(*rows, firms=(), offices=()):
    return build_plan(parse_snapshot(snapshot(*rows)),
                      {f.code: f for f in firms}, {o.code: o for o in offices})


class TestClassification:
    """Test records land in the right bucket."""

    def test_new_firm_and_office(self):
        """Test everything is created against an empty store."""
        plan = plan_for(office_row('1A001', 'FRA', 'Firm A'))
        assert_equal([f.code for f in plan.firm_creates], ['FRA'])
        assert_equal(plan.firm_creates[0].type, LSP)
        assert_equal([o.code for o in plan.office_creates], ['1A001'])
        assert_equal(plan.office_creates[0].firm_code, 'FRA')

    def test_unchanged_is_empty(self):
        """Test identical data plans nothing."""
        plan = plan_for(office_row('1A001', 'FRA'),
                        firms=[local_firm('FRA')], offices=[local_office('1A001', 'FRA')])
        assert_true(plan.is_empty, plan.summary())
        assert_equal(plan.warnings, [])

    def test_null_and_empty_compare_equal(self):
        """Test blank upstream fields do not churn null local fields."""
        plan = plan_for(office_row('1A001', 'FRA', officeAddressLine2='', officeAddressLine3='  '),
                        firms=[local_firm('FRA')], offices=[local_office('1A001', 'FRA')])
        assert_true(plan.is_empty)

    def test_address_change(self):
        """Test a changed address is an office update."""
        plan = plan_for(office_row('1A001', 'FRA', city='Leeds'),
                        firms=[local_firm('FRA')], offices=[local_office('1A001', 'FRA')])
        assert_equal(len(plan.office_updates), 1)
        assert_equal(plan.office_updates[0].address.city, 'Leeds')
        assert_false(plan.office_updates[0].moved)

    def test_office_moved(self):
        """Test an office under another firm is a move."""
        plan = plan_for(office_row('1A001', 'FRB'),
                        firms=[local_firm('FRA'), local_firm('FRB')],
                        offices=[local_office('1A001', 'FRA'), local_office('2B001', 'FRB')])
        moves = [u for u in plan.office_updates if u.moved]
        assert_equal([(u.office.code, u.firm_code) for u in moves], [('1A001', 'FRB')])
        assert_equal([f.code for f in plan.firm_deactivations], ['FRA'])
        assert_equal([o.code for o in plan.office_removals], ['2B001'])

    def test_absent_upstream(self):
        """Test local active records missing upstream are deactivated/removed."""
        plan = plan_for(office_row('1A001', 'FRA'),
                        firms=[local_firm('FRA'), local_firm('FRB'), local_firm('FRC', active=False)],
                        offices=[local_office('1A001', 'FRA'), local_office('2B001', 'FRB')])
        assert_equal([f.code for f in plan.firm_deactivations], ['FRB'])
        assert_equal([o.code for o in plan.office_removals], ['2B001'])

    def test_reappearing_records_reactivated(self):
        """Test inactive local records present upstream are reactivated."""
        plan = plan_for(office_row('1A001', 'FRA'),
                        firms=[local_firm('FRA', active=False)],
                        offices=[local_office('1A001', 'FRA', active=False)])
        assert_equal([f.code for f in plan.firm_reactivations], ['FRA'])
        assert_equal([o.code for o in plan.office_reactivations], ['1A001'])
        assert_equal(plan.firm_updates, [])


class TestFirmRules:
    """Test type, name and parent handling."""

    def test_type_change_rejected(self):
        """Test a different upstream type is refused with a warning."""
        plan = plan_for(office_row('1A001', 'FRA', 'Renamed A', firm_type='CHAMBERS'),
                        firms=[local_firm('FRA')], offices=[local_office('1A001', 'FRA')])
        assert_equal(plan.firm_updates, [])
        assert_true(any('type change' in w and 'FRA' in w for w in plan.warnings), plan.warnings)

    def test_unknown_type_skips_firm(self):
        """Test an unparseable type leaves the firm and its offices alone."""
        plan = plan_for(office_row('1A001', 'FRA', firm_type='SOLE_TRADER'),
                        office_row('2B001', 'FRB'))
        assert_equal([f.code for f in plan.firm_creates], ['FRB'])
        assert_equal([o.code for o in plan.office_creates], ['2B001'])
        assert_true(any('FRA' in w for w in plan.warnings))

    def test_skipped_firm_not_deactivated(self):
        """Test a locally known firm with a bad upstream type is left as it is."""
        plan = plan_for(office_row('1A001', 'FRA', firm_type=''),
                        firms=[local_firm('FRA')], offices=[local_office('1A001', 'FRA')])
        assert_true(plan.is_empty)
        assert_equal(len(plan.warnings), 1)

    def test_type_spelling(self):
        """Test provider spellings map onto the enum."""
        plan = plan_for(office_row('1A001', 'FRA', firm_type='Legal Services Provider'))
        assert_equal(plan.firm_creates[0].type, LSP)

    def test_rename(self):
        """Test a new name is an update."""
        plan = plan_for(office_row('1A001', 'FRA', 'Firm A Ltd'),
                        firms=[local_firm('FRA', 'Firm A')], offices=[local_office('1A001', 'FRA')])
        assert_equal([(u.firm.code, u.name) for u in plan.firm_updates], [('FRA', 'Firm A Ltd')])

    def test_rename_to_taken_name_skipped(self):
        """Test a rename colliding with another firm's name is skipped."""
        plan = plan_for(office_row('1A001', 'FRA', 'Firm B'), office_row('2B001', 'FRB', 'Firm B'),
                        firms=[local_firm('FRA', 'Firm A'), local_firm('FRB', 'Firm B')],
                        offices=[local_office('1A001', 'FRA'), local_office('2B001', 'FRB')])
        assert_equal(plan.firm_updates, [])
        assert_true(any('already used by firm FRB' in w for w in plan.warnings), plan.warnings)

    def test_new_firm_with_taken_name_skipped(self):
        """Test creating a firm whose name exists locally is skipped."""
        plan = plan_for(office_row('1A001', 'FRA', 'Firm A'), office_row('9Z001', 'FRZ', 'Firm A'),
                        firms=[local_firm('FRA', 'Firm A')], offices=[local_office('1A001', 'FRA')])
        assert_equal(plan.firm_creates, [])
        assert_equal(plan.office_creates, [])

    def test_valid_parent(self):
        """Test a top-level non-advocate parent is kept."""
        plan = plan_for(office_row('1A001', 'FRA'), office_row('2B001', 'FRB', parent='FRA'))
        parents = {f.code: f.parent_code for f in plan.firm_creates}
        assert_equal(parents, {'FRA': None, 'FRB': 'FRA'})

    def test_parent_rules(self):
        """Test unknown, advocate and multi-level parents are cleared with warnings."""
        plan = plan_for(
            office_row('1A001', 'ADV', firm_type='ADVOCATE'),
            office_row('2B001', 'TOP'),
            office_row('3C001', 'MID', parent='TOP'),
            office_row('4D001', 'C1', parent='ADV'),
            office_row('5E001', 'C2', parent='MID'),
            office_row('6F001', 'C3', parent='NOPE'),
            office_row('7G001', 'C4', parent=' NULL '),
        )
        parents = {f.code: f.parent_code for f in plan.firm_creates}
        assert_equal(parents['MID'], 'TOP')
        assert_equal(parents['C1'], None)
        assert_equal(parents['C2'], None)
        assert_equal(parents['C3'], None)
        assert_equal(parents['C4'], None)
        assert_equal(len([w for w in plan.warnings if 'parent cleared' in w]), 3)

    def test_parent_change(self):
        """Test a parent added upstream is an update."""
        plan = plan_for(office_row('1A001', 'FRA'), office_row('2B001', 'FRB', parent='FRA'),
                        firms=[local_firm('FRA'), local_firm('FRB')],
                        offices=[local_office('1A001', 'FRA'), local_office('2B001', 'FRB')])
        assert_equal([(u.firm.code, u.parent_changed, u.parent_code) for u in plan.firm_updates],
                     [('FRB', True, 'FRA')])

    def test_new_firm_waits_for_released_name(self):
        """Test a name freed by a rename is not handed to a new firm in the same plan."""
        plan = plan_for(office_row('1A001', 'FRA', 'Alpha2'), office_row('3C001', 'FRC', 'Alpha'),
                        firms=[local_firm('FRA', 'Alpha')], offices=[local_office('1A001', 'FRA')])
        assert_equal([(u.firm.code, u.name) for u in plan.firm_updates], [('FRA', 'Alpha2')])
        assert_equal(plan.firm_creates, [])
        assert_equal(plan.office_creates, [])
        assert_true(any('FRC' in w and 'Alpha' in w for w in plan.warnings), plan.warnings)

    def test_rejected_type_change_keeps_name(self):
        """Test a firm whose update is rejected still holds its old name."""
        plan = plan_for(office_row('1A001', 'FRA', 'Alpha2', firm_type='CHAMBERS'),
                        office_row('3C001', 'FRC', 'Alpha'),
                        firms=[local_firm('FRA', 'Alpha')], offices=[local_office('1A001', 'FRA')])
        assert_equal(plan.firm_updates, [])
        assert_equal(plan.firm_creates, [])
        assert_true(any('already used by firm FRA' in w for w in plan.warnings), plan.warnings)

    def test_parent_checked_against_stored_type(self):
        """Test a stored advocate relabelled upstream is still refused as a parent."""
        plan = plan_for(office_row('1A001', 'FRA', firm_type='CHAMBERS'),
                        office_row('2B001', 'FRB', parent='FRA'),
                        firms=[local_firm('FRA', type=FirmType.ADVOCATE), local_firm('FRB')],
                        offices=[local_office('1A001', 'FRA'), local_office('2B001', 'FRB')])
        assert_equal(plan.firm_updates, [])
        assert_true(any('FRB parent cleared' in w and 'ADVOCATE' in w for w in plan.warnings), plan.warnings)

    def test_parent_checked_against_stored_parent(self):
        """Test a firm that still has a stored parent cannot become a parent."""
        plan = plan_for(office_row('1A001', 'TOP'),
                        office_row('2B001', 'MID', firm_type='CHAMBERS'),
                        office_row('3C001', 'LOW', parent='MID'),
                        firms=[local_firm('TOP'), local_firm('MID', parent='TOP'), local_firm('LOW')],
                        offices=[local_office('1A001', 'TOP'), local_office('2B001', 'MID'),
                                 local_office('3C001', 'LOW')])
        assert_equal(plan.firm_updates, [])
        assert_true(any('LOW parent cleared' in w for w in plan.warnings), plan.warnings)

    def test_parent_deactivated_same_run(self):
        """Test a parent missing upstream is cleared while it is deactivated."""
        plan = plan_for(office_row('2B001', 'FRB', parent='FRA'),
                        firms=[local_firm('FRA'), local_firm('FRB', parent='FRA')],
                        offices=[local_office('1A001', 'FRA'), local_office('2B001', 'FRB')])
        assert_equal([f.code for f in plan.firm_deactivations], ['FRA'])
        assert_equal([(u.firm.code, u.parent_changed, u.parent_code) for u in plan.firm_updates],
                     [('FRB', True, None)])


class TestIntegrity:
    """Test provider data integrity pass."""

    def test_orphans_and_empty_firms_dropped(self):
        """Test offices without firms and firms without offices are removed."""
        dataset = ProviderDataset(
            firms={'FRA': ProviderFirm('FRA', 'Firm A', 'PARTNERSHIP'),
                   'FRB': ProviderFirm('FRB', 'Firm B', 'PARTNERSHIP')},
            offices={'1A001': ProviderOffice('1A001', 'FRA'),
                     '9Z001': ProviderOffice('9Z001', 'GONE')},
        )
        tally = SyncTally()
        cleaned = check_integrity(dataset, tally)
        assert_equal(list(cleaned.firms), ['FRA'])
        assert_equal(list(cleaned.offices), ['1A001'])
        assert_equal(tally.warnings, ['Removed 1 orphan offices', 'Removed 1 firms without offices'])

    def test_clean_dataset_untouched(self):
        dataset = parse_snapshot(snapshot(office_row('1A001', 'FRA')))
        tally = SyncTally()
        assert_true(check_integrity(dataset, tally) is dataset)
        assert_equal(tally.warnings, [])
