import os
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple

from vaultkeeper.models import DatabaseTarget, load_database_targets


class ConfigError(Exception):
    """Raised when a required setting is missing or malformed."""
    pass


STORAGE_CLOUD = 'cloud'
STORAGE_LOCAL = 'local'

PROVIDER_S3 = 's3'
PROVIDER_R2 = 'r2'

FILES_PREFIX = 'files-backup/'
DB_PREFIX = 'db-backup/'


def _get(env: Mapping[str, str], key: str) -> Optional[str]:
    value = env.get(key)
    if value is None or value.strip() == '':
        return None
    return value.strip()


def _get_float(env: Mapping[str, str], key: str, default: float) -> float:
    value = _get(env, key)
    if value is None:
        return default
    try:
        parsed = float(value)
    except ValueError:
        raise ConfigError(f"{key} must be a number, got {value!r}")
    if parsed <= 0:
        raise ConfigError(f"{key} must be positive, got {value!r}")
    return parsed


def _get_int(env: Mapping[str, str], key: str, default: int) -> int:
    value = _get(env, key)
    if value is None:
        return default
    try:
        parsed = int(value)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {value!r}")
    if parsed < 1:
        raise ConfigError(f"{key} must be at least 1, got {value!r}")
    return parsed


@dataclass(frozen=True)
class StorageSettings:
    """Object storage (S3 or R2) connection settings"""
    provider: str = PROVIDER_S3
    bucket: Optional[str] = None
    region: Optional[str] = None
    access_key: Optional[str] = field(default=None, repr=False)
    secret_key: Optional[str] = field(default=None, repr=False)
    endpoint_url: Optional[str] = None
    account_id: Optional[str] = None

    def resolve_endpoint(self) -> Optional[str]:
        if self.endpoint_url:
            return self.endpoint_url
        if self.provider == PROVIDER_R2 and self.account_id:
            return f"https://{self.account_id}.r2.cloudflarestorage.com"
        return None

    def resolve_region(self) -> str:
        if self.region:
            return self.region
        return 'auto' if self.provider == PROVIDER_R2 else 'us-east-1'


@dataclass(frozen=True)
class FilesSettings:
    """File mirror source settings and download limits"""
    source_dir: Optional[str] = None
    listing_url: Optional[str] = None
    archive_url: Optional[str] = None
    prefix: str = FILES_PREFIX
    batch_size: int = 10
    archive_timeout: float = 1800.0
    file_timeout: float = 300.0
    listing_timeout: float = 30.0

    @property
    def has_source(self) -> bool:
        return bool(self.source_dir or self.listing_url or self.archive_url)


@dataclass(frozen=True)
class Config:
    """Process configuration, built once at startup"""

    storage_mode: str = STORAGE_CLOUD
    local_backup_path: Optional[str] = None
    work_dir: str = field(default_factory=lambda: os.path.join(os.getcwd(), 'backups'))

    storage: StorageSettings = field(default_factory=StorageSettings)
    files: FilesSettings = field(default_factory=FilesSettings)

    databases: Tuple[DatabaseTarget, ...] = ()
    pg_dump_path: Optional[str] = None
    dump_timeout: float = 3600.0

    cron_expression: Optional[str] = None
    run_on_startup: bool = False

    log_level: str = 'INFO'
    log_dir: Optional[str] = None

    @property
    def is_local_mode(self) -> bool:
        return self.storage_mode == STORAGE_LOCAL

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> 'Config':
        """
        Build configuration from environment variables.

        Args:
            env: Mapping to read from (default: os.environ)

        Returns:
            Config instance

        Raises:
            ConfigError: If a setting is malformed
        """
        if env is None:
            env = os.environ

        storage_mode = (_get(env, 'BACKUP_STORAGE') or STORAGE_CLOUD).lower()
        if storage_mode not in (STORAGE_CLOUD, STORAGE_LOCAL):
            raise ConfigError(f"BACKUP_STORAGE must be 'cloud' or 'local', got {storage_mode!r}")

        provider = (_get(env, 'STORAGE_PROVIDER') or PROVIDER_S3).lower()
        if provider not in (PROVIDER_S3, PROVIDER_R2):
            raise ConfigError(f"STORAGE_PROVIDER must be 's3' or 'r2', got {provider!r}")

        storage = StorageSettings(
            provider=provider,
            bucket=_get(env, 'AWS_S3_BUCKET'),
            region=_get(env, 'AWS_S3_REGION'),
            access_key=_get(env, 'AWS_ACCESS_KEY_ID'),
            secret_key=_get(env, 'AWS_SECRET_ACCESS_KEY'),
            endpoint_url=_get(env, 'S3_ENDPOINT_URL'),
            account_id=_get(env, 'R2_ACCOUNT_ID')
        )

        files = FilesSettings(
            source_dir=_get(env, 'FILES_SOURCE_DIR'),
            listing_url=_get(env, 'FILES_LISTING_URL'),
            archive_url=_get(env, 'FILES_BACKUP_URL'),
            batch_size=_get_int(env, 'DOWNLOAD_BATCH_SIZE', 10),
            archive_timeout=_get_float(env, 'ARCHIVE_DOWNLOAD_TIMEOUT', 1800.0),
            file_timeout=_get_float(env, 'FILE_DOWNLOAD_TIMEOUT', 300.0),
            listing_timeout=_get_float(env, 'LISTING_TIMEOUT', 30.0)
        )

        databases = load_database_targets(
            _get(env, 'DATABASE_CONFIGS'),
            _get(env, 'BACKUP_DATABASE_URL')
        )

        work_dir = _get(env, 'BACKUP_WORK_DIR') or os.path.join(os.getcwd(), 'backups')

        return cls(
            storage_mode=storage_mode,
            local_backup_path=_get(env, 'LOCAL_BACKUP_PATH'),
            work_dir=os.path.abspath(work_dir),
            storage=storage,
            files=files,
            databases=tuple(databases),
            pg_dump_path=_get(env, 'PG_DUMP_PATH'),
            dump_timeout=_get_float(env, 'DUMP_TIMEOUT', 3600.0),
            cron_expression=_get(env, 'CRON_JOB_INTERVAL'),
            run_on_startup=(_get(env, 'RUN_ON_STARTUP') or 'false').lower() == 'true',
            log_level=_get(env, 'LOG_LEVEL') or 'INFO',
            log_dir=_get(env, 'LOG_DIR')
        )

    def validate_startup(self):
        """
        Check settings that the process cannot run without.

        Raises:
            ConfigError: If a required top-level setting is absent
        """
        if not self.cron_expression and not self.run_on_startup:
            raise ConfigError("Nothing to do: set CRON_JOB_INTERVAL and/or RUN_ON_STARTUP=true")

        if not self.is_local_mode and not self.storage.bucket:
            raise ConfigError("AWS_S3_BUCKET is required when BACKUP_STORAGE is 'cloud'")

        if self.storage.provider == PROVIDER_R2 and not self.is_local_mode and not self.storage.resolve_endpoint():
            raise ConfigError("STORAGE_PROVIDER=r2 requires S3_ENDPOINT_URL or R2_ACCOUNT_ID")
