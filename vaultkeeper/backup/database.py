"""
Database dump handlers.

Supports:
- PostgresDumper: pg_dump output, gzip-compressed
- MSSQLDumper: plain-text INSERT dump built from schema introspection

Each dump produces one BackupArtifact in the working directory, or raises
DumpError after removing anything it wrote.
"""

import asyncio
import gzip
import logging
import os
import uuid
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Any, Optional

import pymssql

from vaultkeeper.config import DB_PREFIX, Config
from vaultkeeper.models import (
    BackupArtifact,
    DatabaseTarget,
    MSSQLTarget,
    PostgresTarget,
    file_timestamp,
)


logger = logging.getLogger(__name__)

# A gzip stream with no payload is already 20 bytes
MIN_ARTIFACT_SIZE = 20
STREAM_CHUNK_SIZE = 64 * 1024


class DumpError(Exception):
    """Raised when a database dump fails or produces an implausible artifact."""
    pass


def build_artifact(target: DatabaseTarget, extension: str, work_dir: str,
                   now: Optional[datetime] = None) -> BackupArtifact:
    """
    Name the artifact for a target.

    Format: backup-{name}-{timestamp}.{ext}, stored under db-backup/
    """
    filename = f"backup-{target.name}-{file_timestamp(now)}.{extension}"
    return BackupArtifact(
        local_path=os.path.join(work_dir, filename),
        storage_key=f"{DB_PREFIX}{filename}",
        source_name=target.name,
        source_kind=target.kind
    )


def discard_artifact(path: str):
    """Remove a partial or invalid artifact, if present."""
    if os.path.exists(path):
        try:
            os.remove(path)
            logger.info(f"Removed invalid backup file: {path}")
        except OSError as e:
            logger.error(f"Failed to remove invalid backup file {path}: {e}")


def verify_artifact(path: str) -> int:
    """
    Check that the artifact exists and is not trivially small.

    Returns:
        Artifact size in bytes

    Raises:
        DumpError: If the file is missing or smaller than MIN_ARTIFACT_SIZE
    """
    if not os.path.isfile(path):
        raise DumpError(f"Backup file was not created: {path}")

    size = os.path.getsize(path)
    if size < MIN_ARTIFACT_SIZE:
        raise DumpError(f"Backup file is empty or too small ({size} bytes), likely failed")

    return size


def quote_sql_string(text: str) -> str:
    return "'" + text.replace("'", "''") + "'"


def quote_identifier(name: str) -> str:
    return '[' + name.replace(']', ']]') + ']'


def format_sql_value(value: Any) -> str:
    """
    Render a column value as a T-SQL literal.

    None -> NULL, bool -> 1/0, numbers as-is, strings quoted with embedded
    quotes doubled, temporal values as quoted ISO-8601, binary as 0x hex,
    UUIDs quoted; anything else is quoted as its string form.
    """
    if value is None:
        return 'NULL'
    if isinstance(value, bool):
        return '1' if value else '0'
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    if isinstance(value, str):
        return quote_sql_string(value)
    if isinstance(value, (datetime, date, time)):
        return quote_sql_string(value.isoformat())
    if isinstance(value, (bytes, bytearray, memoryview)):
        return '0x' + bytes(value).hex().upper()
    if isinstance(value, uuid.UUID):
        return quote_sql_string(str(value))
    return quote_sql_string(str(value))


class PostgresDumper:
    """
    Dumps a PostgreSQL database with the external pg_dump utility.

    Anything written to stderr counts as a failure, even with a zero exit code.
    """

    extension = 'sql.gz'

    def __init__(self, target: PostgresTarget, work_dir: str,
                 pg_dump_path: Optional[str] = None, timeout: float = 3600.0):
        self.target = target
        self.work_dir = work_dir
        self.timeout = timeout
        self.executable = os.path.join(pg_dump_path, 'pg_dump') if pg_dump_path else 'pg_dump'

    async def dump(self) -> BackupArtifact:
        """
        Run pg_dump and gzip its output into the artifact.

        Raises:
            DumpError: If pg_dump fails, times out, or the artifact is implausible
        """
        os.makedirs(self.work_dir, exist_ok=True)
        artifact = build_artifact(self.target, self.extension, self.work_dir)

        logger.info(f"Creating PostgreSQL backup for database {self.target.name}...")

        try:
            await asyncio.wait_for(self._run_pg_dump(artifact.local_path), timeout=self.timeout)
            size = verify_artifact(artifact.local_path)
        except asyncio.TimeoutError:
            discard_artifact(artifact.local_path)
            raise DumpError(f"pg_dump timed out after {self.timeout:.0f}s")
        except DumpError:
            discard_artifact(artifact.local_path)
            raise
        except asyncio.CancelledError:
            discard_artifact(artifact.local_path)
            raise
        except Exception as e:
            discard_artifact(artifact.local_path)
            raise DumpError(f"Failed to run pg_dump: {e}") from e

        logger.info(f"PostgreSQL backup created at {artifact.local_path} ({size} bytes)")
        return artifact

    async def _run_pg_dump(self, output_path: str):
        process = await asyncio.create_subprocess_exec(
            self.executable,
            f"--dbname={self.target.connection_string}",
            '-F', 'p',
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE
        )

        stderr_task = asyncio.ensure_future(process.stderr.read())
        written = 0

        try:
            with gzip.open(output_path, 'wb') as f:
                while True:
                    chunk = await process.stdout.read(STREAM_CHUNK_SIZE)
                    if not chunk:
                        break
                    f.write(chunk)
                    written += len(chunk)

            stderr = await stderr_task
            returncode = await process.wait()
        finally:
            if not stderr_task.done():
                stderr_task.cancel()
            if process.returncode is None:
                process.kill()
                await process.wait()

        stderr_text = stderr.decode('utf-8', errors='replace').strip()
        if stderr_text:
            logger.error(f"pg_dump stderr: {stderr_text}")
            raise DumpError(f"pg_dump error: {stderr_text}")

        if returncode != 0:
            raise DumpError(f"pg_dump exited with code {returncode}")

        if written == 0:
            raise DumpError("pg_dump produced no output")


class MSSQLDumper:
    """
    Dumps an MSSQL database as INSERT statements.

    Issues read-only queries only: list base tables, list columns per table,
    select all rows per table.
    """

    extension = 'bak'

    TABLES_QUERY = (
        "SELECT TABLE_SCHEMA, TABLE_NAME "
        "FROM INFORMATION_SCHEMA.TABLES "
        "WHERE TABLE_TYPE = 'BASE TABLE' "
        "ORDER BY TABLE_SCHEMA, TABLE_NAME"
    )

    COLUMNS_QUERY = (
        "SELECT COLUMN_NAME, DATA_TYPE, CHARACTER_MAXIMUM_LENGTH, IS_NULLABLE "
        "FROM INFORMATION_SCHEMA.COLUMNS "
        "WHERE TABLE_SCHEMA = %s AND TABLE_NAME = %s "
        "ORDER BY ORDINAL_POSITION"
    )

    def __init__(self, target: MSSQLTarget, work_dir: str, login_timeout: int = 30):
        self.target = target
        self.work_dir = work_dir
        self.login_timeout = login_timeout

    async def dump(self) -> BackupArtifact:
        """
        Write the dump file in a worker thread.

        Raises:
            DumpError: If connecting, querying or writing fails
        """
        os.makedirs(self.work_dir, exist_ok=True)
        artifact = build_artifact(self.target, self.extension, self.work_dir)

        logger.info(f"Creating MSSQL backup for database {self.target.name}...")

        try:
            tables, rows = await asyncio.to_thread(self._write_dump, artifact.local_path)
        except pymssql.Error as e:
            discard_artifact(artifact.local_path)
            raise DumpError(f"MSSQL query failed: {e}")
        except asyncio.CancelledError:
            discard_artifact(artifact.local_path)
            raise
        except Exception as e:
            discard_artifact(artifact.local_path)
            raise DumpError(f"MSSQL backup failed: {e}") from e

        size = os.path.getsize(artifact.local_path)
        logger.info(f"MSSQL backup created at {artifact.local_path} ({tables} tables, {rows} rows, {size} bytes)")
        return artifact

    def _connect(self):
        return pymssql.connect(
            server=self.target.host,
            port=str(self.target.port),
            user=self.target.user,
            password=self.target.password,
            database=self.target.database,
            login_timeout=self.login_timeout,
            encryption='require' if self.target.encrypt else 'off'
        )

    def _write_dump(self, output_path: str):
        conn = self._connect()
        table_count = 0
        row_count = 0

        try:
            cursor = conn.cursor(as_dict=True)
            cursor.execute(self.TABLES_QUERY)
            tables = cursor.fetchall()

            with open(output_path, 'w', encoding='utf-8') as f:
                f.write("-- MSSQL Database Backup\n")
                f.write(f"-- Database: {self.target.database}\n")
                f.write(f"-- Date: {datetime.now(timezone.utc):%Y-%m-%dT%H:%M:%S}Z\n\n")

                for table in tables:
                    schema = table['TABLE_SCHEMA']
                    name = table['TABLE_NAME']
                    qualified = f"{quote_identifier(schema)}.{quote_identifier(name)}"

                    cursor.execute(self.COLUMNS_QUERY, (schema, name))
                    columns = [column['COLUMN_NAME'] for column in cursor.fetchall()]

                    f.write(f"-- Table: {schema}.{name}\n")
                    table_count += 1

                    cursor.execute(f"SELECT * FROM {qualified}")
                    has_rows = False

                    for row in cursor:
                        if not has_rows:
                            f.write(f"-- Data for table {schema}.{name}\n")
                            has_rows = True
                        values = ', '.join(format_sql_value(row.get(column)) for column in columns)
                        f.write(f"INSERT INTO {qualified} VALUES ({values});\n")
                        row_count += 1

                    if has_rows:
                        f.write('\n')
        finally:
            conn.close()

        return table_count, row_count


def create_dumper(target: DatabaseTarget, config: Config):
    """
    Factory function to create the dumper for a target.

    Raises:
        ValueError: If the target type is not supported
    """
    if isinstance(target, PostgresTarget):
        return PostgresDumper(
            target,
            config.work_dir,
            pg_dump_path=config.pg_dump_path,
            timeout=config.dump_timeout
        )
    elif isinstance(target, MSSQLTarget):
        return MSSQLDumper(target, config.work_dir)
    else:
        raise ValueError(f"Unsupported database target: {target!r}")
