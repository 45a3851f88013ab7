"""
Pre-backup health checks.

Run before a unit is inspected for integrity or stopped: the backup root
must have room for a new artifact, and the data root should be readable
by the current user.
"""

import logging
import os
import shutil
from pathlib import Path

from guardian import log_success


logger = logging.getLogger(__name__)

GIB = 1024 ** 3


class InsufficientSpace(Exception):
    """Raised when the backup root has less free space than configured."""
    pass


def free_space_gb(path) -> float:
    """
    Free space in GiB on the filesystem holding path.

    The nearest existing ancestor is measured when path does not exist yet.
    """
    path = Path(path)
    while not path.exists() and path != path.parent:
        path = path.parent
    return shutil.disk_usage(path).free / GIB


def check_free_space(backup_root, minimum_gb: float) -> float:
    """
    Raises:
        InsufficientSpace: If less than minimum_gb is available (0 disables the check)
    """
    available = free_space_gb(backup_root)
    if minimum_gb and available < minimum_gb:
        raise InsufficientSpace(
            f"Insufficient disk space on {backup_root}: {available:.1f}GB available, "
            f"{minimum_gb:g}GB required"
        )
    log_success(logger, "Sufficient disk space: %.1fGB available", available)
    return available


def check_readable(data_root) -> bool:
    """
    Warn when the data root or one of its top-level entries cannot be read.

    Returns:
        True if everything checked is readable
    """
    data_root = Path(data_root)
    unreadable = [data_root] if not os.access(data_root, os.R_OK | os.X_OK) else []
    if not unreadable:
        for entry in data_root.iterdir():
            if not os.access(entry, os.R_OK):
                unreadable.append(entry)

    if unreadable:
        logger.warning(
            "Not readable by the current user (uid %d): %s. Files may be missing from the backup; "
            "run as root or fix permissions",
            os.getuid(), ', '.join(str(p) for p in unreadable)
        )
        return False
    return True


def preflight(config, data_root):
    """
    Health checks for one unit run.

    Raises:
        InsufficientSpace: If the backup root is short on space
    """
    logger.info("Performing pre-backup health checks")
    check_free_space(config.backup_root, config.min_free_space_gb)
    check_readable(data_root)
