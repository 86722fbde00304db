"""Provider data API client and snapshot parsing.
"""
import datetime
import json
import logging
import pathlib
from dataclasses import dataclass, field
from typing import Protocol

import httpx

from firmsync.exceptions import TransportError
from firmsync.model import Address, blank_to_none

logger = logging.getLogger(__name__)

__all__ = ['ProviderFirm', 'ProviderOffice', 'ProviderDataset', 'ProviderClient',
           'HttpProviderClient', 'FileProviderClient', 'parse_snapshot']

SNAPSHOT_PATH = '/api/v1/provider-offices/snapshot'


@dataclass(frozen=True)
class ProviderFirm:
    code: str
    name: str
    type: str
    parent_code: str = None


@dataclass(frozen=True)
class ProviderOffice:
    code: str
    firm_code: str
    address: Address = field(default_factory=Address)


@dataclass
class ProviderDataset:
    """Authoritative firms and offices keyed by natural code.
    """
    firms: dict[str, ProviderFirm]
    offices: dict[str, ProviderOffice]
    window_start: datetime.datetime = None
    window_end: datetime.datetime = None


class ProviderClient(Protocol):

    def fetch_firms_and_offices(self, from_ts: datetime.datetime,
                                to_ts: datetime.datetime) -> ProviderDataset:
        ...

    def close(self) -> None:
        ...


def _text(row: dict, key: str) -> str:
    value = row.get(key)
    if value is None:
        return None
    return value if isinstance(value, str) else str(value)


def parse_snapshot(payload: dict, window_start: datetime.datetime = None,
                   window_end: datetime.datetime = None) -> ProviderDataset:
    """Convert the provider's office snapshot into a dataset.

    Each office row repeats its firm's fields; the first row seen for a firm
    number defines that firm.

    Raises
        TransportError: If the payload has no offices or a row lacks its codes
    """
    if not isinstance(payload, dict):
        raise TransportError(f'Expected a JSON object from provider, got {type(payload).__name__}')
    rows = payload.get('offices')
    if not isinstance(rows, list):
        raise TransportError("Expected 'offices' array in response")
    if not rows:
        raise TransportError("Provider returned an empty 'offices' array")

    firms = {}
    offices = {}
    for i, row in enumerate(rows):
        if not isinstance(row, dict):
            raise TransportError(f'Office row {i} is not an object')
        firm_code = blank_to_none(_text(row, 'firmNumber'))
        office_code = blank_to_none(_text(row, 'officeAccountNo'))
        if firm_code is None or office_code is None:
            raise TransportError(f'Office row {i} is missing firmNumber or officeAccountNo')

        if firm_code not in firms:
            firms[firm_code] = ProviderFirm(
                code=firm_code,
                name=_text(row, 'firmName'),
                type=_text(row, 'firmType'),
                parent_code=_text(row, 'parentFirmNumber'),
            )
        offices[office_code] = ProviderOffice(
            code=office_code,
            firm_code=firm_code,
            address=Address(
                line1=_text(row, 'officeAddressLine1'),
                line2=_text(row, 'officeAddressLine2'),
                line3=_text(row, 'officeAddressLine3'),
                city=_text(row, 'officeAddressCity'),
                postcode=_text(row, 'officeAddressPostcode'),
            ),
        )

    if len(offices) < len(rows):
        logger.warning(f'Provider snapshot repeated {len(rows) - len(offices)} office codes, kept last row')

    logger.debug(f'Parsed provider snapshot: {len(firms)} firms, {len(offices)} offices')
    return ProviderDataset(firms=firms, offices=offices, window_start=window_start, window_end=window_end)


class HttpProviderClient:
    """Fetches the firm/office snapshot over HTTP.
    """

    def __init__(self, base_url: str, api_key: str = None, connect_timeout: float = 30,
                 read_timeout: float = 30, transport: httpx.BaseTransport = None):
        """Initialize provider client.

        Args:
            base_url: Provider API root
            api_key: Value for the x-authorization header
            connect_timeout: Connect timeout in seconds
            read_timeout: Read timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        headers = {'Accept': 'application/json', 'Content-Type': 'application/json'}
        if api_key:
            headers['x-authorization'] = api_key
        timeout = httpx.Timeout(read_timeout, connect=connect_timeout)
        self.client = httpx.Client(base_url=base_url, headers=headers, timeout=timeout,
                                   transport=transport)

    def fetch_firms_and_offices(self, from_ts: datetime.datetime,
                                to_ts: datetime.datetime) -> ProviderDataset:
        params = {}
        if from_ts is not None:
            params['from'] = from_ts.isoformat()
        if to_ts is not None:
            params['to'] = to_ts.isoformat()

        logger.debug(f'Fetching provider snapshot for {from_ts} - {to_ts}')
        try:
            response = self.client.get(SNAPSHOT_PATH, params=params)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            raise TransportError(f'Provider returned HTTP {e.response.status_code}') from e
        except httpx.HTTPError as e:
            raise TransportError(f'Provider request failed: {e}') from e
        except ValueError as e:
            raise TransportError(f'Provider returned invalid JSON: {e}') from e

        return parse_snapshot(payload, from_ts, to_ts)

    def close(self) -> None:
        self.client.close()


class FileProviderClient:
    """Reads the snapshot from a local JSON file instead of the API.
    """

    def __init__(self, path: str | pathlib.Path):
        self.path = pathlib.Path(path)

    def fetch_firms_and_offices(self, from_ts: datetime.datetime,
                                to_ts: datetime.datetime) -> ProviderDataset:
        logger.debug(f'Loading provider snapshot from local file: {self.path}')
        try:
            payload = json.loads(self.path.read_text())
        except (OSError, ValueError) as e:
            raise TransportError(f'Failed to read provider snapshot {self.path}: {e}') from e
        return parse_snapshot(payload, from_ts, to_ts)

    def close(self) -> None:
        pass
