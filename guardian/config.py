"""
Configuration for Guardian.

A single immutable Config value is built at process start by load_config()
and handed to every component. Sources, lowest to highest precedence:

1. Built-in defaults
2. Main config file (KEY=VALUE, shell style)
3. Remote storage config file (same format)
4. Environment variables with the same key names
5. Explicit overrides (CLI flags)
"""

import os
import shlex
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple


class ConfigurationError(Exception):
    """Raised when configuration is missing or invalid."""
    pass


DEFAULTS = {
    'BACKUP_BASE_DIR': '~/jellyfin-backups',
    'LOG_DIR': '~/.local/log',
    'CONFIG_DIR': '~/.config/guardian',
    'DATA_ROOT_BASE': '/opt',
    'UNIT_FILTER': 'jellyfin',
    'STOP_CONTAINER_FOR_BACKUP': 'true',
    'CONTAINER_STOP_TIMEOUT': '30',
    'STOP_SETTLE_SECONDS': '2',
    'START_SETTLE_SECONDS': '3',
    'METADATA_INTEGRITY_CHECK': 'true',
    'INTEGRITY_CHECKER': 'python',
    'ENABLE_COMPRESSION': 'true',
    'COMPRESSION_LEVEL': '6',
    'PARALLEL_COMPRESSION': 'true',
    'SHOW_PROGRESS': 'true',
    'LOCAL_RETENTION': '3',
    'MIN_FREE_SPACE_GB': '10',
    'REMOTE_RETENTION': '7',
    'REMOTE_STORAGE_ENABLED': 'false',
    'REMOTE_STORAGE_TYPE': 'sftp',
    'AUTO_UPLOAD': 'true',
    'DELETE_LOCAL_AFTER_UPLOAD': 'false',
    'VERIFY_REMOTE_UPLOAD': 'true',
    'REMOTE_TIMEOUT': '30',
    'NON_INTERACTIVE': 'false',
    # SFTP
    'SFTP_PORT': '22',
    'SFTP_PATH': '/home/backups/jellyfin',
    # S3
    'S3_REGION': 'us-east-1',
    'S3_PATH': 'jellyfin-backups',
    # NFS
    'NFS_MOUNT_POINT': '/mnt/jellyfin-backups',
    'NFS_OPTIONS': 'rw,sync,hard,intr',
    'NFS_SUBDIR': 'jellyfin-backups',
    # FTP
    'FTP_PORT': '21',
    'FTP_PATH': '/jellyfin-backups',
    'FTP_PASSIVE': 'true',
    # rclone
    'RCLONE_PATH': '/jellyfin-backups',
}

CONFIG_SEARCH_PATHS = (
    '~/.config/guardian/guardian.conf',
    '/etc/guardian/guardian.conf',
)

REMOTE_CONFIG_SEARCH_PATHS = (
    '~/.config/guardian/remote.conf',
    '/etc/guardian/remote.conf',
)

PROVIDER_KEYS = (
    'SFTP_HOST', 'SFTP_USER', 'SFTP_KEY_FILE',
    'S3_BUCKET', 'S3_ENDPOINT',
    'NFS_HOST', 'NFS_PATH',
    'FTP_HOST', 'FTP_USER',
    'RCLONE_REMOTE',
)

SECRET_KEYS = ('SFTP_PASSWORD', 'S3_ACCESS_KEY', 'S3_SECRET_KEY', 'FTP_PASS')

ENCRYPTED_PREFIX = 'enc:'


@dataclass(frozen=True)
class SFTPSettings:
    host: str
    username: str
    path: str
    port: int = 22
    key_file: Optional[str] = None
    password: Optional[str] = None


@dataclass(frozen=True)
class S3Settings:
    bucket: str
    path: str
    region: str = 'us-east-1'
    endpoint: Optional[str] = None
    access_key: Optional[str] = None
    secret_key: Optional[str] = None


@dataclass(frozen=True)
class NFSSettings:
    host: str
    export_path: str
    mount_point: str
    options: str = 'rw,sync,hard,intr'
    subdir: str = 'jellyfin-backups'


@dataclass(frozen=True)
class FTPSettings:
    host: str
    username: str
    password: str
    path: str
    port: int = 21
    passive: bool = True


@dataclass(frozen=True)
class RcloneSettings:
    remote: str
    path: str


@dataclass(frozen=True)
class RemoteTarget:
    """Remote storage target: provider tag, provider settings and upload policy."""
    provider: str
    settings: Any
    enabled: bool = False
    auto_upload: bool = True
    retention: int = 7
    verify_upload: bool = True
    delete_local_after_upload: bool = False
    timeout: int = 30


@dataclass(frozen=True)
class Config:
    backup_root: Path
    log_dir: Path
    config_dir: Path
    data_root_base: Path
    unit_filter: str = 'jellyfin'
    stop_for_backup: bool = True
    stop_timeout: int = 30
    stop_settle_seconds: float = 2.0
    start_settle_seconds: float = 3.0
    integrity_check: bool = True
    integrity_checker: str = 'python'
    compression_enabled: bool = True
    compression_level: int = 6
    parallel_compression: bool = True
    show_progress: bool = True
    local_retention: int = 3
    min_free_space_gb: float = 10.0
    non_interactive: bool = False
    dry_run: bool = False
    remote: Optional[RemoteTarget] = None
    sources: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def remote_enabled(self) -> bool:
        return self.remote is not None and self.remote.enabled

    def data_root_for(self, unit_name: str) -> Path:
        return self.data_root_base / unit_name

    def with_overrides(self, **changes) -> 'Config':
        return replace(self, **changes)


def parse_config_file(path) -> Dict[str, str]:
    """
    Parse a KEY=VALUE configuration file.

    Blank lines and # comments are ignored; values may be quoted and may
    carry an ``export`` prefix, so existing shell-sourced files keep working.

    Raises:
        ConfigurationError: If the file cannot be read or a line is malformed
    """
    values = {}
    try:
        with open(path, 'r') as f:
            lines = f.readlines()
    except OSError as e:
        raise ConfigurationError(f"Cannot read config file {path}: {e}")

    for lineno, raw in enumerate(lines, start=1):
        line = raw.strip()
        if not line or line.startswith('#'):
            continue
        if line.startswith('export '):
            line = line[len('export '):].strip()
        if '=' not in line:
            raise ConfigurationError(f"{path}:{lineno}: expected KEY=VALUE, got {raw.strip()!r}")

        key, _, value = line.partition('=')
        key = key.strip()
        try:
            tokens = shlex.split(value, comments=True)
        except ValueError as e:
            raise ConfigurationError(f"{path}:{lineno}: {e}")
        values[key] = ' '.join(tokens)

    return values


def write_config_file(path, values: Mapping[str, str]):
    """Write values as a KEY=VALUE file readable by parse_config_file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    lines = ['# Generated by guardian --configure-remote']
    for key, value in values.items():
        lines.append(f"{key}={shlex.quote(str(value))}")
    path.write_text('\n'.join(lines) + '\n')
    os.chmod(path, 0o600)


def _find_file(explicit, env_var, candidates, environ) -> Optional[Path]:
    if explicit:
        path = Path(explicit).expanduser()
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {explicit}")
        return path

    from_env = environ.get(env_var)
    if from_env:
        path = Path(from_env).expanduser()
        if not path.exists():
            raise ConfigurationError(f"Config file not found ({env_var}): {from_env}")
        return path

    for candidate in candidates:
        path = Path(candidate).expanduser()
        if path.exists():
            return path
    return None


def _bool(values, key) -> bool:
    raw = str(values.get(key, '')).strip().lower()
    if raw in ('true', 'yes', 'y', '1', 'on'):
        return True
    if raw in ('false', 'no', 'n', '0', 'off', ''):
        return False
    raise ConfigurationError(f"{key} must be true or false, got {values.get(key)!r}")


def _int(values, key, minimum=None, maximum=None) -> int:
    raw = values.get(key)
    try:
        number = int(str(raw).strip())
    except (TypeError, ValueError):
        raise ConfigurationError(f"{key} must be an integer, got {raw!r}")
    if minimum is not None and number < minimum:
        raise ConfigurationError(f"{key} must be >= {minimum}, got {number}")
    if maximum is not None and number > maximum:
        raise ConfigurationError(f"{key} must be <= {maximum}, got {number}")
    return number


def _float(values, key) -> float:
    raw = values.get(key)
    try:
        number = float(str(raw).strip())
    except (TypeError, ValueError):
        raise ConfigurationError(f"{key} must be a number, got {raw!r}")
    if number < 0:
        raise ConfigurationError(f"{key} must not be negative, got {number}")
    return number


def _required(values, provider, *keys):
    missing = [key for key in keys if not values.get(key)]
    if missing:
        raise ConfigurationError(
            f"Remote storage type '{provider}' requires: {', '.join(missing)}"
        )


def _decrypt_secrets(values: Dict[str, str], config_dir: Path):
    encrypted = [k for k in SECRET_KEYS if str(values.get(k, '')).startswith(ENCRYPTED_PREFIX)]
    if not encrypted:
        return

    from cryptography.fernet import InvalidToken
    from guardian.utils.crypto import CredentialCipher, KeyFileError

    cipher = CredentialCipher.for_config_dir(config_dir)
    if not cipher.has_key:
        raise ConfigurationError(f"Encrypted credentials present but no secret key at {cipher.key_path}")

    for key in encrypted:
        try:
            values[key] = cipher.decrypt(values[key][len(ENCRYPTED_PREFIX):])
        except KeyFileError as e:
            raise ConfigurationError(str(e))
        except InvalidToken:
            raise ConfigurationError(f"Cannot decrypt {key}: wrong secret key or corrupted value")


def _build_provider_settings(provider: str, values: Dict[str, str]):
    if provider == 'sftp':
        _required(values, provider, 'SFTP_HOST', 'SFTP_USER', 'SFTP_PATH')
        if not values.get('SFTP_KEY_FILE') and not values.get('SFTP_PASSWORD'):
            raise ConfigurationError("Remote storage type 'sftp' requires SFTP_KEY_FILE or SFTP_PASSWORD")
        return SFTPSettings(
            host=values['SFTP_HOST'],
            port=_int(values, 'SFTP_PORT', 1, 65535),
            username=values['SFTP_USER'],
            key_file=values.get('SFTP_KEY_FILE') or None,
            password=values.get('SFTP_PASSWORD') or None,
            path=values['SFTP_PATH'],
        )
    if provider == 's3':
        _required(values, provider, 'S3_BUCKET')
        return S3Settings(
            bucket=values['S3_BUCKET'],
            path=values.get('S3_PATH', '').strip('/'),
            region=values.get('S3_REGION') or 'us-east-1',
            endpoint=values.get('S3_ENDPOINT') or None,
            access_key=values.get('S3_ACCESS_KEY') or None,
            secret_key=values.get('S3_SECRET_KEY') or None,
        )
    if provider == 'nfs':
        _required(values, provider, 'NFS_HOST', 'NFS_PATH', 'NFS_MOUNT_POINT')
        return NFSSettings(
            host=values['NFS_HOST'],
            export_path=values['NFS_PATH'],
            mount_point=values['NFS_MOUNT_POINT'],
            options=values.get('NFS_OPTIONS') or 'rw,sync,hard,intr',
            subdir=values.get('NFS_SUBDIR', 'jellyfin-backups'),
        )
    if provider == 'ftp':
        _required(values, provider, 'FTP_HOST', 'FTP_USER', 'FTP_PASS')
        return FTPSettings(
            host=values['FTP_HOST'],
            port=_int(values, 'FTP_PORT', 1, 65535),
            username=values['FTP_USER'],
            password=values['FTP_PASS'],
            path=values.get('FTP_PATH') or '/',
            passive=_bool(values, 'FTP_PASSIVE'),
        )
    if provider == 'rclone':
        _required(values, provider, 'RCLONE_REMOTE')
        return RcloneSettings(
            remote=values['RCLONE_REMOTE'],
            path=values.get('RCLONE_PATH', ''),
        )

    from guardian.backup.storage import PROVIDERS
    raise ConfigurationError(
        f"Unknown remote storage type: {provider}. Valid options: {sorted(PROVIDERS)}"
    )


def build_config(values: Mapping[str, str], sources=()) -> Config:
    """
    Build a validated Config from a flat mapping of raw string values.

    Raises:
        ConfigurationError: On any invalid or missing value
    """
    values = dict(values)
    config_dir = Path(values['CONFIG_DIR']).expanduser()

    remote = None
    if _bool(values, 'REMOTE_STORAGE_ENABLED'):
        provider = values.get('REMOTE_STORAGE_TYPE', '').strip().lower()
        _decrypt_secrets(values, config_dir)
        remote = RemoteTarget(
            provider=provider,
            settings=_build_provider_settings(provider, values),
            enabled=True,
            auto_upload=_bool(values, 'AUTO_UPLOAD'),
            retention=_int(values, 'REMOTE_RETENTION', minimum=0),
            verify_upload=_bool(values, 'VERIFY_REMOTE_UPLOAD'),
            delete_local_after_upload=_bool(values, 'DELETE_LOCAL_AFTER_UPLOAD'),
            timeout=_int(values, 'REMOTE_TIMEOUT', minimum=1),
        )

    checker = values.get('INTEGRITY_CHECKER', 'python').strip().lower()
    if checker not in ('python', 'sqlite3-cli'):
        raise ConfigurationError(
            f"INTEGRITY_CHECKER must be 'python' or 'sqlite3-cli', got {checker!r}"
        )

    return Config(
        backup_root=Path(values['BACKUP_BASE_DIR']).expanduser(),
        log_dir=Path(values['LOG_DIR']).expanduser(),
        config_dir=config_dir,
        data_root_base=Path(values['DATA_ROOT_BASE']).expanduser(),
        unit_filter=values.get('UNIT_FILTER', ''),
        stop_for_backup=_bool(values, 'STOP_CONTAINER_FOR_BACKUP'),
        stop_timeout=_int(values, 'CONTAINER_STOP_TIMEOUT', minimum=1),
        stop_settle_seconds=_float(values, 'STOP_SETTLE_SECONDS'),
        start_settle_seconds=_float(values, 'START_SETTLE_SECONDS'),
        integrity_check=_bool(values, 'METADATA_INTEGRITY_CHECK'),
        integrity_checker=checker,
        compression_enabled=_bool(values, 'ENABLE_COMPRESSION'),
        compression_level=_int(values, 'COMPRESSION_LEVEL', 1, 9),
        parallel_compression=_bool(values, 'PARALLEL_COMPRESSION'),
        show_progress=_bool(values, 'SHOW_PROGRESS'),
        local_retention=_int(values, 'LOCAL_RETENTION', minimum=0),
        min_free_space_gb=_float(values, 'MIN_FREE_SPACE_GB'),
        non_interactive=_bool(values, 'NON_INTERACTIVE'),
        remote=remote,
        sources=tuple(str(s) for s in sources),
    )


def load_config(
    config_file: Optional[str] = None,
    remote_config_file: Optional[str] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None
) -> Config:
    """
    Load configuration from defaults, files, environment and overrides.

    Args:
        config_file: Explicit main config file (otherwise searched)
        remote_config_file: Explicit remote storage config file (otherwise searched)
        overrides: Raw KEY -> value overrides applied last (CLI flags)
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Immutable Config

    Raises:
        ConfigurationError: If a file is missing/malformed or a value is invalid
    """
    environ = os.environ if environ is None else environ
    values = dict(DEFAULTS)
    sources = []

    main_file = _find_file(config_file, 'GUARDIAN_CONFIG', CONFIG_SEARCH_PATHS, environ)
    if main_file:
        values.update(parse_config_file(main_file))
        sources.append(main_file)

    remote_file = _find_file(remote_config_file, 'GUARDIAN_REMOTE_CONFIG', REMOTE_CONFIG_SEARCH_PATHS, environ)
    if remote_file:
        values.update(parse_config_file(remote_file))
        sources.append(remote_file)

    for key in set(DEFAULTS) | set(values) | set(PROVIDER_KEYS) | set(SECRET_KEYS):
        if key in environ:
            values[key] = environ[key]

    for key, value in (overrides or {}).items():
        if value is None:
            continue
        if isinstance(value, bool):
            value = 'true' if value else 'false'
        values[key] = str(value)

    return build_config(values, sources)


def remote_config_path(environ: Optional[Mapping[str, str]] = None) -> Path:
    """Path where the remote configuration wizard writes its file."""
    environ = os.environ if environ is None else environ
    if environ.get('GUARDIAN_REMOTE_CONFIG'):
        return Path(environ['GUARDIAN_REMOTE_CONFIG']).expanduser()
    return Path(REMOTE_CONFIG_SEARCH_PATHS[0]).expanduser()
