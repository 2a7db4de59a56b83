"""
File mirror - copies a file tree into storage, skipping what is already there.

Workflow:
1. Resolve the active source (local directory, remote listing or archive)
2. Acquire it as a local directory
3. Fetch the set of keys already stored under the files prefix (cloud mode)
4. Upload files whose key is missing, or copy every file (local mode)
5. Remove anything created for this run
"""

import logging
from typing import Optional

import httpx

from vaultkeeper.config import Config
from vaultkeeper.models import FILES, RunResult
from .sources import HTTP_TIMEOUT, create_source, walk_files
from .storage import LocalStorage, S3Storage, StorageError


logger = logging.getLogger(__name__)


class FileMirror:
    """
    Runs one mirror of the configured file source.
    """

    def __init__(self, config: Config, storage: Optional[S3Storage] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Initialize the mirror.

        Args:
            config: Process configuration
            storage: Object storage gateway (required in cloud mode)
            transport: Optional httpx transport for remote sources
        """
        self.config = config
        self.storage = storage
        self.transport = transport

    async def run(self) -> RunResult:
        """
        Mirror the configured source.

        Failures are logged and reported in the result with the counts
        reached so far; they are not raised.

        Returns:
            RunResult for the mirror
        """
        result = RunResult(target='files', kind=FILES)

        try:
            await self._mirror(result)
        except Exception as e:
            logger.error(f"Error performing files backup: {e}")
            return result.finish(False, str(e))

        return result.finish(True)

    async def _mirror(self, result: RunResult):
        settings = self.config.files

        if not settings.has_source:
            logger.info("No file source configured, files backup skipped.")
            result.note = 'no file source configured'
            return

        if self.config.is_local_mode and not self.config.local_backup_path:
            logger.error("BACKUP_STORAGE is 'local' but LOCAL_BACKUP_PATH is not set, files backup skipped.")
            result.note = 'local backup path not configured'
            return

        if not self.config.is_local_mode and self.storage is None:
            raise StorageError("Object storage is not configured")

        client = httpx.AsyncClient(transport=self.transport, follow_redirects=True, timeout=HTTP_TIMEOUT)
        async with client:
            source = create_source(settings, self.config.work_dir, client)
            logger.info(f"Mirroring files from {source.kind}")

            try:
                try:
                    source_dir = await source.acquire()
                finally:
                    result.downloaded = getattr(source, 'downloaded', 0)
                    result.failed = getattr(source, 'failed', 0)

                if self.config.is_local_mode:
                    await self._copy_locally(source_dir, result)
                else:
                    await self._upload_missing(source_dir, result)
            finally:
                source.cleanup()

    async def _upload_missing(self, source_dir: str, result: RunResult):
        prefix = self.config.files.prefix

        logger.info("Checking existing files in bucket...")
        existing_keys = await self.storage.list_keys(prefix)
        logger.info(f"Found {len(existing_keys)} files already backed up")

        logger.info("Uploading new files to bucket...")
        for entry in walk_files(source_dir):
            if entry.relative_path in existing_keys:
                result.skipped += 1
                logger.debug(f"  ⊘ Skipped (already exists): {entry.relative_path}")
                continue

            await self.storage.put(entry.absolute_path, prefix + entry.relative_path)
            result.uploaded += 1
            logger.info(f"  ✓ Uploaded: {entry.relative_path} ({result.uploaded} uploaded, {result.skipped} skipped)")

        result.location = prefix
        logger.info("Files backup completed:")
        logger.info(f"  - {result.uploaded} new files uploaded")
        logger.info(f"  - {result.skipped} files skipped (already backed up)")
        logger.info(f"  - Total files in backup: {len(existing_keys) + result.uploaded}")

    async def _copy_locally(self, source_dir: str, result: RunResult):
        local_storage = LocalStorage(self.config.local_backup_path)
        prefix = self.config.files.prefix

        for entry in walk_files(source_dir):
            local_storage.store(entry.absolute_path, prefix + entry.relative_path)
            result.uploaded += 1

        result.location = str(local_storage.base_path / prefix.rstrip('/'))
        logger.info(f"Files backup completed: {result.uploaded} files copied to {result.location}")
