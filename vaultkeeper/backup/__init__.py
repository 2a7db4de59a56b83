"""
Backup module for vaultkeeper.

This module handles the core backup functionality including:
- File sources (local directory, remote listing, remote archive)
- Incremental file mirroring
- Database dumps (PostgreSQL, MSSQL)
- Storage (S3/R2 and local)
- Run orchestration
"""

from .executor import BackupOrchestrator, run_backups
from .mirror import FileMirror
from .database import PostgresDumper, MSSQLDumper, create_dumper
from .storage import S3Storage, LocalStorage, create_storage

__all__ = [
    'BackupOrchestrator',
    'run_backups',
    'FileMirror',
    'PostgresDumper',
    'MSSQLDumper',
    'create_dumper',
    'S3Storage',
    'LocalStorage',
    'create_storage'
]
