"""
Backup module for Mongoback.

This module handles the core backup functionality including:
- mongodump invocation
- Retention policy enforcement
- Encryption
- Upload to remote destinations
- Single-database and per-database orchestration

The Flask-aware entry points live in mongoback.backup.executor.
"""

from .dump import run_dump, build_dump_command, parse_archive_name
from .encryption import FileEncryptor
from .enumerator import list_database_names
from .errors import (
    BackupError,
    ConfigError,
    DumpFailed,
    StageFailed,
    RetentionFailed,
    EncryptionFailed,
    UploadFailed,
    EnumerationFailed,
    PartialBackupFailure,
)
from .fanout import FanOutController
from .orchestrator import BackupOrchestrator
from .retention import apply_retention, cleanup_temp_dir
from .types import AttemptContext, BackupMode, BackupStatus, Plan, Result, RuntimeConfig
from .uploaders import Uploader, build_uploaders

__all__ = [
    'run_dump',
    'build_dump_command',
    'parse_archive_name',
    'FileEncryptor',
    'list_database_names',
    'BackupError',
    'ConfigError',
    'DumpFailed',
    'StageFailed',
    'RetentionFailed',
    'EncryptionFailed',
    'UploadFailed',
    'EnumerationFailed',
    'PartialBackupFailure',
    'FanOutController',
    'BackupOrchestrator',
    'apply_retention',
    'cleanup_temp_dir',
    'AttemptContext',
    'BackupMode',
    'BackupStatus',
    'Plan',
    'Result',
    'RuntimeConfig',
    'Uploader',
    'build_uploaders',
]
