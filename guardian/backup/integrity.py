"""
Integrity verification of the SQLite databases inside a unit's data root.

Runs before any destructive action. A single database that does not report
"ok" fails the whole report.
"""

import logging
import shutil
import sqlite3
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Tuple

from guardian import log_success


logger = logging.getLogger(__name__)

VERDICT_OK = 'ok'
VERDICT_FAILED = 'failed'
VERDICT_UNKNOWN = 'unknown'

DATABASE_PATTERN = '*.db'


class IntegrityFailure(Exception):
    """Raised when one or more databases fail the integrity check."""

    def __init__(self, report: 'IntegrityReport'):
        self.report = report
        failed = ', '.join(Path(p).name for p in report.failed)
        super().__init__(f"{len(report.failed)} database(s) failed integrity check: {failed}")


class IntegrityToolUnavailable(Exception):
    """Raised by a checker when its check tool cannot be found."""
    pass


@dataclass(frozen=True)
class IntegrityReport:
    """Per-database verdicts plus the aggregate result."""
    results: Tuple[Tuple[str, str], ...]
    passed: bool
    warnings: Tuple[str, ...] = ()

    @property
    def failed(self):
        return [path for path, verdict in self.results if verdict == VERDICT_FAILED]

    @property
    def checked(self) -> int:
        return len(self.results)

    def summary(self) -> dict:
        counts = {VERDICT_OK: 0, VERDICT_FAILED: 0, VERDICT_UNKNOWN: 0}
        for _, verdict in self.results:
            counts[verdict] += 1
        return {
            'passed': self.passed,
            'databases': self.checked,
            'ok': counts[VERDICT_OK],
            'failed': counts[VERDICT_FAILED],
            'unknown': counts[VERDICT_UNKNOWN],
            'failed_files': [Path(p).name for p in self.failed],
            'warnings': list(self.warnings),
        }


def check_with_sqlite_module(db_path: Path) -> str:
    """Run PRAGMA integrity_check through the sqlite3 module, read-only."""
    uri = f"{Path(db_path).resolve().as_uri()}?mode=ro"
    try:
        conn = sqlite3.connect(uri, uri=True, timeout=10)
    except sqlite3.Error as e:
        logger.debug("Cannot open %s: %s", db_path, e)
        return VERDICT_FAILED

    try:
        rows = conn.execute('PRAGMA integrity_check').fetchall()
    except sqlite3.DatabaseError as e:
        logger.debug("Integrity check error on %s: %s", db_path, e)
        return VERDICT_FAILED
    finally:
        conn.close()

    if rows and rows[0][0] == 'ok':
        return VERDICT_OK
    return VERDICT_FAILED


def check_with_sqlite_cli(db_path: Path) -> str:
    """
    Run PRAGMA integrity_check through the external sqlite3 binary.

    Raises:
        IntegrityToolUnavailable: If sqlite3 is not on PATH
    """
    binary = shutil.which('sqlite3')
    if binary is None:
        raise IntegrityToolUnavailable('sqlite3 binary not found on PATH')

    try:
        result = subprocess.run(
            [binary, '-readonly', str(db_path), 'PRAGMA integrity_check;'],
            capture_output=True,
            text=True,
            timeout=300
        )
    except FileNotFoundError:
        raise IntegrityToolUnavailable('sqlite3 binary disappeared')
    except subprocess.TimeoutExpired:
        logger.warning("Integrity check timed out: %s", db_path)
        return VERDICT_FAILED

    if result.returncode == 0 and result.stdout.strip().splitlines()[:1] == ['ok']:
        return VERDICT_OK
    return VERDICT_FAILED


CHECKERS = {
    'python': check_with_sqlite_module,
    'sqlite3-cli': check_with_sqlite_cli,
}


class IntegrityVerifier:
    """
    Enumerates the databases under a data root and checks each one.

    Side-effect free: databases are opened read-only.
    """

    def __init__(self, checker: Callable[[Path], str] = check_with_sqlite_module):
        self.checker = checker

    @classmethod
    def from_config(cls, config) -> 'IntegrityVerifier':
        return cls(CHECKERS[config.integrity_checker])

    def find_databases(self, data_root: Path):
        return sorted(p for p in Path(data_root).rglob(DATABASE_PATTERN) if p.is_file())

    def verify(self, data_root) -> IntegrityReport:
        """
        Check every database under data_root.

        Returns:
            IntegrityReport (aggregate passes unless a database reports failed)
        """
        logger.info("Verifying database integrity before backup: %s", data_root)
        databases = self.find_databases(data_root)

        if not databases:
            message = f"No database files found for verification in {data_root}"
            logger.warning(message)
            return IntegrityReport(results=(), passed=True, warnings=(message,))

        results = []
        unavailable = 0
        for db_path in databases:
            logger.info("Checking database: %s", db_path.name)
            try:
                verdict = self.checker(db_path)
            except IntegrityToolUnavailable as e:
                unavailable += 1
                logger.debug("Check tool unavailable for %s: %s", db_path.name, e)
                verdict = VERDICT_UNKNOWN

            if verdict == VERDICT_OK:
                log_success(logger, "Database integrity OK: %s", db_path.name)
            elif verdict == VERDICT_FAILED:
                logger.error("Database integrity FAILED: %s", db_path.name)
            results.append((str(db_path), verdict))

        warnings = []
        if unavailable:
            message = f"Integrity check tool unavailable, {unavailable} database(s) not verified"
            logger.warning(message)
            warnings.append(message)

        report = IntegrityReport(
            results=tuple(results),
            passed=not any(v == VERDICT_FAILED for _, v in results),
            warnings=tuple(warnings)
        )

        if report.passed:
            log_success(logger, "All databases passed integrity checks (%d checked)", report.checked)
        else:
            logger.error("Found %d database(s) with integrity issues", len(report.failed))
        return report
