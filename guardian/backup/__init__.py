"""
Backup module for Guardian.

This module handles the core backup functionality including:
- Database integrity verification
- Container lifecycle control (stop / restart)
- Streaming compression
- Remote storage (SFTP, S3, NFS, FTP, rclone)
- Retention policy enforcement
- Run ledgers
- Pre-backup health checks
- Execution orchestration
"""

from .executor import BackupExecutor, BackupResult, UnitNotFound, run_batch
from .integrity import IntegrityFailure, IntegrityVerifier
from .lifecycle import BackupCancelled, LifecycleController, LifecycleError, LifecycleTimeout
from .compression import CompressionFailure, CompressionPipeline
from .health import InsufficientSpace
from .replicator import RemoteReplicator
from .storage import PROVIDERS, ReplicationFailure, create_storage
from .retention import RetentionFailure, RetentionManager

__all__ = [
    'BackupExecutor',
    'BackupResult',
    'UnitNotFound',
    'run_batch',
    'IntegrityFailure',
    'IntegrityVerifier',
    'BackupCancelled',
    'LifecycleController',
    'LifecycleError',
    'LifecycleTimeout',
    'CompressionFailure',
    'CompressionPipeline',
    'InsufficientSpace',
    'RemoteReplicator',
    'PROVIDERS',
    'ReplicationFailure',
    'create_storage',
    'RetentionFailure',
    'RetentionManager'
]
