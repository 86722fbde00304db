__version__ = '0.1.0'

from firmsync.config import SyncConfig as SyncConfig
from firmsync.config import build_connection_string as build_connection_string
from firmsync.exceptions import LockAcquisitionError as LockAcquisitionError
from firmsync.exceptions import ReconciliationStepError as ReconciliationStepError
from firmsync.exceptions import SyncError as SyncError
from firmsync.exceptions import SyncRejectedError as SyncRejectedError
from firmsync.exceptions import TransportError as TransportError
from firmsync.lock import LockCoordinator as LockCoordinator
from firmsync.lock import LockStore as LockStore
from firmsync.model import SyncResult as SyncResult
from firmsync.reconcile import Reconciler as Reconciler
from firmsync.schema import get_table_names as get_table_names
from firmsync.service import SyncService as SyncService
