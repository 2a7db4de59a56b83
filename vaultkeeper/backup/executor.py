"""
Backup orchestrator - runs the complete backup workflow.

Workflow:
1. Mirror the configured file source
2. For each database target, in configured order:
   a. Dump to a local artifact
   b. Store it (upload to object storage, or move under the local root)
   c. Remove the local artifact
3. Log a summary

A failure is confined to the step's own unit (the mirror or one target);
the remaining targets still run.
"""

import logging
import os
from typing import Callable, List, Optional

from vaultkeeper.config import Config
from vaultkeeper.models import FILES, DatabaseTarget, RunResult
from .database import create_dumper
from .mirror import FileMirror
from .storage import LocalStorage, S3Storage, StorageError, create_storage


logger = logging.getLogger(__name__)


class BackupOrchestrator:
    """
    Orchestrates one backup run across the file mirror and all database targets.
    """

    def __init__(self, config: Config, storage: Optional[S3Storage] = None,
                 mirror: Optional[FileMirror] = None, dumper_factory: Callable = create_dumper):
        """
        Initialize the orchestrator.

        Args:
            config: Process configuration
            storage: Object storage gateway; built from config in cloud mode when omitted
            mirror: File mirror to run first; built from config when omitted
            dumper_factory: Callable(target, config) returning a dumper
        """
        self.config = config
        self.storage = storage
        self.dumper_factory = dumper_factory

        if self.storage is None and not config.is_local_mode:
            try:
                self.storage = create_storage(config)
            except StorageError as e:
                logger.error(f"Object storage unavailable: {e}")

        self.mirror = mirror or FileMirror(config, self.storage)

    async def run(self) -> List[RunResult]:
        """
        Execute one backup run.

        Returns:
            One RunResult for the file mirror followed by one per database target
        """
        logger.info(f"Backup storage mode: {self.config.storage_mode}")

        results = [await self._run_mirror()]

        targets = self.config.databases
        if not targets:
            logger.info("No valid database configurations found, skipping database backups")
        else:
            logger.info(f"Starting database backup process for {len(targets)} database(s)")
            for target in targets:
                results.append(await self.backup_database(target))

        self._log_summary(results)
        return results

    async def _run_mirror(self) -> RunResult:
        try:
            return await self.mirror.run()
        except Exception as e:
            logger.error(f"Files backup failed: {e}")
            return RunResult(target='files', kind=FILES).finish(False, str(e))

    async def backup_database(self, target: DatabaseTarget) -> RunResult:
        """
        Dump, store and clean up one database target.

        Never raises: any failure is logged and returned as a failed result.
        """
        result = RunResult(target=target.name, kind=target.kind)
        artifact = None

        logger.info(f"--- Backing up {target.name} ({target.kind}) ---")

        try:
            dumper = self.dumper_factory(target, self.config)
            artifact = await dumper.dump()
            result.location = await self._store(artifact.local_path, artifact.storage_key)
            result.uploaded = 1
            result.finish(True)
            logger.info(f"Backup completed for {target.name}")

        except Exception as e:
            result.failed = 1
            result.finish(False, str(e))
            logger.error(f"Failed to backup database {target.name}: {e}")

        finally:
            if artifact is not None:
                self._cleanup(artifact.local_path)

        return result

    async def _store(self, local_path: str, storage_key: str) -> str:
        if self.config.is_local_mode:
            if not self.config.local_backup_path:
                raise StorageError("BACKUP_STORAGE is 'local' but LOCAL_BACKUP_PATH is not set")

            local_storage = LocalStorage(self.config.local_backup_path)
            final_path = local_storage.store(local_path, os.path.basename(local_path), move=True)
            logger.info(f"Backup saved locally: {final_path}")
            return final_path

        if self.storage is None:
            raise StorageError("Object storage is not configured")

        logger.info(f"Uploading backup to bucket {self.storage.bucket_name}...")
        await self.storage.put(local_path, storage_key)
        logger.info(f"Backup uploaded: {storage_key}")
        return storage_key

    def _cleanup(self, local_path: str):
        if os.path.exists(local_path):
            try:
                os.remove(local_path)
                logger.info(f"Removed local backup file: {local_path}")
            except OSError as e:
                logger.warning(f"Failed to remove local backup file {local_path}: {e}")

    def _log_summary(self, results: List[RunResult]):
        succeeded = sum(1 for result in results if result.success)
        logger.info(f"Backup run finished: {succeeded}/{len(results)} succeeded")

        for result in results:
            line = f"  - {result.target} ({result.kind}): {result.status}"
            if result.kind == FILES:
                line += f", {result.uploaded} uploaded, {result.skipped} skipped, {result.failed} failed"
            if result.note:
                line += f" [{result.note}]"
            if result.error:
                line += f" - {result.error}"
            logger.info(line)


async def run_backups(config: Config) -> List[RunResult]:
    """Run one complete backup with a freshly built orchestrator."""
    orchestrator = BackupOrchestrator(config)
    return await orchestrator.run()
