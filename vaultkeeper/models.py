"""
Data model for backup runs.

Database targets are a tagged variant (PostgresTarget | MSSQLTarget) validated
once when configuration is loaded. The remaining types are transient values
produced and consumed during a single run.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union


logger = logging.getLogger(__name__)

POSTGRES = 'postgresql'
MSSQL = 'mssql'
FILES = 'files'


class TargetConfigError(ValueError):
    """Raised when a database target definition is incomplete or malformed."""
    pass


@dataclass(frozen=True)
class PostgresTarget:
    """A PostgreSQL database dumped with pg_dump."""
    name: str
    connection_string: str = field(repr=False)

    kind = POSTGRES


@dataclass(frozen=True)
class MSSQLTarget:
    """An MSSQL database dumped through schema introspection."""
    name: str
    host: str
    database: str
    user: str
    password: str = field(repr=False)
    port: int = 1433
    encrypt: bool = True
    trust_server_certificate: bool = False

    kind = MSSQL


DatabaseTarget = Union[PostgresTarget, MSSQLTarget]


@dataclass(frozen=True)
class BackupArtifact:
    """Local dump file waiting to be stored."""
    local_path: str
    storage_key: str
    source_name: str
    source_kind: str


@dataclass(frozen=True)
class FileEntry:
    """A regular file discovered under a mirror source root."""
    relative_path: str
    absolute_path: str


@dataclass(frozen=True)
class RemoteFileDescriptor:
    """One element of a remote JSON file listing."""
    file_name: str
    url: str
    size: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Any) -> 'RemoteFileDescriptor':
        """
        Build a descriptor from a listing element.

        Args:
            data: Dict with 'fileName', 'url' and optionally 'size'

        Raises:
            ValueError: If required keys are missing or have the wrong type
        """
        if not isinstance(data, dict):
            raise ValueError(f"Listing entry must be an object, got {type(data).__name__}")

        file_name = data.get('fileName')
        url = data.get('url')
        if not isinstance(file_name, str) or not file_name:
            raise ValueError("Listing entry is missing 'fileName'")
        if not isinstance(url, str) or not url:
            raise ValueError(f"Listing entry '{file_name}' is missing 'url'")

        size = data.get('size')
        if size is not None:
            try:
                size = int(size)
            except (TypeError, ValueError):
                raise ValueError(f"Listing entry '{file_name}' has invalid size: {size!r}")

        return cls(file_name=file_name, url=url, size=size)


@dataclass
class RunResult:
    """Outcome of one unit of a backup run (one database target or the file mirror)."""
    target: str
    kind: str
    success: bool = False
    uploaded: int = 0
    skipped: int = 0
    failed: int = 0
    downloaded: int = 0
    location: Optional[str] = None
    error: Optional[str] = None
    note: Optional[str] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None

    @property
    def total(self) -> int:
        return self.uploaded + self.skipped

    @property
    def status(self) -> str:
        return 'success' if self.success else 'failed'

    def finish(self, success: bool, error: Optional[str] = None) -> 'RunResult':
        self.success = success
        self.error = error
        self.completed_at = datetime.now(timezone.utc)
        return self


def file_timestamp(now: Optional[datetime] = None) -> str:
    """
    UTC ISO-8601 timestamp with millisecond precision, safe for file names.

    '2024-01-15T12:00:00.123Z' becomes '2024-01-15T12-00-00-123Z'.
    """
    if now is None:
        now = datetime.now(timezone.utc)
    iso = now.strftime('%Y-%m-%dT%H:%M:%S.') + f"{now.microsecond // 1000:03d}Z"
    return iso.replace(':', '-').replace('.', '-')


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')


def _is_text(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def parse_target(data: Dict[str, Any]) -> DatabaseTarget:
    """
    Build a database target from its configuration record.

    Args:
        data: Dict with 'type', 'name' and the kind-specific fields

    Returns:
        PostgresTarget or MSSQLTarget

    Raises:
        TargetConfigError: If the record is invalid for its type
    """
    if not isinstance(data, dict):
        raise TargetConfigError("Database config must be an object")

    target_type = data.get('type')
    name = data.get('name')
    if not _is_text(target_type) or not _is_text(name):
        raise TargetConfigError("Database config requires 'type' and 'name' as non-empty strings")

    if target_type == POSTGRES:
        connection_string = data.get('connectionString')
        if not _is_text(connection_string):
            raise TargetConfigError(f"PostgreSQL config '{name}' requires connectionString")
        return PostgresTarget(name=name, connection_string=connection_string)

    if target_type == MSSQL:
        missing = [key for key in ('host', 'database', 'user', 'password') if not _is_text(data.get(key))]
        if missing:
            raise TargetConfigError(
                f"MSSQL config '{name}' requires host, database, user, and password "
                f"(missing: {', '.join(missing)})"
            )

        options = data.get('options')
        if options is None:
            options = {}
        elif not isinstance(options, dict):
            raise TargetConfigError(f"MSSQL config '{name}' options must be an object")

        port = data.get('port')
        try:
            port = int(port or 1433)
        except (TypeError, ValueError):
            raise TargetConfigError(f"MSSQL config '{name}' has invalid port: {port!r}")

        return MSSQLTarget(
            name=name,
            host=data['host'],
            database=data['database'],
            user=data['user'],
            password=data['password'],
            port=port,
            encrypt=_as_bool(options.get('encrypt'), True),
            trust_server_certificate=_as_bool(options.get('trustServerCertificate'), False)
        )

    raise TargetConfigError(f"Unsupported database type '{target_type}' for '{name}'")


def load_database_targets(configs_json: Optional[str], legacy_url: Optional[str] = None) -> List[DatabaseTarget]:
    """
    Parse and validate all configured database targets.

    Invalid records are logged and excluded; they never affect the other
    targets. When DATABASE_CONFIGS yields no records and a legacy Postgres URL
    is present, a single 'legacy-db' target is returned.

    Args:
        configs_json: JSON array of target records (DATABASE_CONFIGS)
        legacy_url: Legacy PostgreSQL connection string (BACKUP_DATABASE_URL)

    Returns:
        Targets in configured order
    """
    records = []

    if configs_json:
        try:
            parsed = json.loads(configs_json)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse DATABASE_CONFIGS: {e}")
            parsed = None

        if isinstance(parsed, list):
            records = parsed
            logger.info(f"Loaded {len(records)} database configuration(s) from DATABASE_CONFIGS")
        elif parsed is not None:
            logger.error("DATABASE_CONFIGS must be a JSON array")

    targets = []
    seen_names = set()

    for record in records:
        try:
            target = parse_target(record)
        except TargetConfigError as e:
            logger.error(f"Skipping invalid database config: {e}")
            continue

        if target.name in seen_names:
            logger.error(f"Skipping duplicate database config name: {target.name}")
            continue

        seen_names.add(target.name)
        targets.append(target)

    if not records and legacy_url:
        logger.info("Using legacy BACKUP_DATABASE_URL configuration")
        targets.append(PostgresTarget(name='legacy-db', connection_string=legacy_url))

    return targets
