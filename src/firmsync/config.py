import os
from dataclasses import dataclass


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == 'true'


def build_connection_string(host: str, port: int, dbname: str, user: str, password: str) -> str:
    """Build PostgreSQL connection string from parameters.
    """
    return (
        f'postgresql+psycopg://{user}:{password}'
        f'@{host}:{port}/{dbname}'
    )


@dataclass
class SyncConfig:
    """Configuration for the provider synchronization service.

    All timing parameters are in seconds.
    Connection parameters for database and provider access.
    """
    interval_sec: int = 3600
    run_on_startup: bool = False
    lock_key: str = 'pda-sync'
    lease_timeout_sec: int = 900
    lease_renew_interval_sec: int = 60
    default_window_sec: int = 3600
    window_cap_sec: int = 3600
    safety_buffer_sec: int = 300
    max_pending_syncs: int = 2

    host: str = 'localhost'
    port: int = 5432
    dbname: str = 'firmsync'
    user: str = 'postgres'
    password: str = 'postgres'
    appname: str = 'sync_'
    database_url: str = None

    provider_base_url: str = 'http://localhost:8080'
    provider_api_key: str = None
    provider_connect_timeout_sec: float = 30
    provider_read_timeout_sec: float = 30
    provider_local_file: str = None

    def __post_init__(self):
        for name in ('interval_sec', 'lease_timeout_sec', 'lease_renew_interval_sec',
                     'default_window_sec', 'window_cap_sec'):
            if getattr(self, name) <= 0:
                raise ValueError(f'{name} must be positive, got {getattr(self, name)}')
        if self.safety_buffer_sec < 0:
            raise ValueError(f'safety_buffer_sec must not be negative, got {self.safety_buffer_sec}')
        if self.window_cap_sec <= self.safety_buffer_sec:
            raise ValueError(
                f'window_cap_sec ({self.window_cap_sec}) must exceed safety_buffer_sec ({self.safety_buffer_sec})')
        if self.lease_renew_interval_sec >= self.lease_timeout_sec:
            raise ValueError(
                f'lease_renew_interval_sec ({self.lease_renew_interval_sec}) must be shorter '
                f'than lease_timeout_sec ({self.lease_timeout_sec})')
        if self.max_pending_syncs < 1:
            raise ValueError(f'max_pending_syncs must be at least 1, got {self.max_pending_syncs}')

    @property
    def connection_string(self) -> str:
        """SQLAlchemy URL, preferring an explicit database_url.
        """
        if self.database_url:
            return self.database_url
        return build_connection_string(self.host, self.port, self.dbname, self.user, self.password)

    @classmethod
    def from_environment(cls, **overrides) -> 'SyncConfig':
        """Build configuration from SYNC_* environment variables.

        Unset variables keep the dataclass defaults. Keyword overrides win
        over the environment.
        """
        defaults = cls.__dataclass_fields__
        values = dict(
            interval_sec=int(os.getenv('SYNC_INTERVAL', defaults['interval_sec'].default)),
            run_on_startup=_env_bool('SYNC_RUN_ON_STARTUP', 'false'),
            lock_key=os.getenv('SYNC_LOCK_KEY', defaults['lock_key'].default),
            lease_timeout_sec=int(os.getenv('SYNC_LEASE_TIMEOUT', defaults['lease_timeout_sec'].default)),
            lease_renew_interval_sec=int(os.getenv('SYNC_LEASE_RENEW_INTERVAL',
                                                   defaults['lease_renew_interval_sec'].default)),
            default_window_sec=int(os.getenv('SYNC_DEFAULT_WINDOW', defaults['default_window_sec'].default)),
            window_cap_sec=int(os.getenv('SYNC_WINDOW_CAP', defaults['window_cap_sec'].default)),
            safety_buffer_sec=int(os.getenv('SYNC_SAFETY_BUFFER', defaults['safety_buffer_sec'].default)),
            max_pending_syncs=int(os.getenv('SYNC_MAX_PENDING', defaults['max_pending_syncs'].default)),
            host=os.getenv('SYNC_SQL_HOST', defaults['host'].default),
            port=int(os.getenv('SYNC_SQL_PORT', defaults['port'].default)),
            dbname=os.getenv('SYNC_SQL_DATABASE', defaults['dbname'].default),
            user=os.getenv('SYNC_SQL_USERNAME', defaults['user'].default),
            password=os.getenv('SYNC_SQL_PASSWORD', defaults['password'].default),
            appname=os.getenv('SYNC_SQL_APPNAME', defaults['appname'].default),
            database_url=os.getenv('SYNC_SQL_URL'),
            provider_base_url=os.getenv('SYNC_PROVIDER_URL', defaults['provider_base_url'].default),
            provider_api_key=os.getenv('SYNC_PROVIDER_API_KEY'),
            provider_connect_timeout_sec=float(os.getenv('SYNC_PROVIDER_CONNECT_TIMEOUT',
                                                         defaults['provider_connect_timeout_sec'].default)),
            provider_read_timeout_sec=float(os.getenv('SYNC_PROVIDER_READ_TIMEOUT',
                                                      defaults['provider_read_timeout_sec'].default)),
            provider_local_file=os.getenv('SYNC_PROVIDER_LOCAL_FILE'),
        )
        values.update(overrides)
        return cls(**values)
