"""
Interactive remote storage configuration wizard.

Writes the remote config file read by load_config(). Passwords and keys
are stored encrypted as ``enc:<token>``.
"""

import logging
from pathlib import Path
from typing import Dict

import click

from guardian.config import ENCRYPTED_PREFIX, SECRET_KEYS, write_config_file
from guardian.utils.crypto import CredentialCipher


logger = logging.getLogger(__name__)

PROVIDER_CHOICES = ('sftp', 's3', 'nfs', 'ftp', 'rclone')


def prompt_sftp() -> Dict[str, str]:
    values = {
        'SFTP_HOST': click.prompt('SFTP server hostname or IP'),
        'SFTP_PORT': click.prompt('SFTP port', default=22, type=click.IntRange(1, 65535)),
        'SFTP_USER': click.prompt('SFTP username'),
        'SFTP_PATH': click.prompt('Remote backup path', default='/home/backups/jellyfin'),
    }
    if click.confirm('Authenticate with an SSH key?', default=True):
        values['SFTP_KEY_FILE'] = click.prompt('SSH private key file', default=str(Path('~/.ssh/id_rsa').expanduser()))
    else:
        values['SFTP_PASSWORD'] = click.prompt('SFTP password', hide_input=True)
    return values


def prompt_s3() -> Dict[str, str]:
    return {
        'S3_ENDPOINT': click.prompt('S3 endpoint URL (empty for AWS S3)', default='', show_default=False),
        'S3_BUCKET': click.prompt('S3 bucket name'),
        'S3_ACCESS_KEY': click.prompt('S3 access key'),
        'S3_SECRET_KEY': click.prompt('S3 secret key', hide_input=True),
        'S3_REGION': click.prompt('S3 region', default='us-east-1'),
        'S3_PATH': click.prompt('S3 path prefix', default='jellyfin-backups'),
    }


def prompt_nfs() -> Dict[str, str]:
    return {
        'NFS_HOST': click.prompt('NFS server hostname or IP'),
        'NFS_PATH': click.prompt('NFS export path'),
        'NFS_MOUNT_POINT': click.prompt('Local mount point', default='/mnt/jellyfin-backups'),
        'NFS_OPTIONS': click.prompt('NFS mount options', default='rw,sync,hard,intr'),
        'NFS_SUBDIR': click.prompt('Subdirectory on the share', default='jellyfin-backups'),
    }


def prompt_ftp() -> Dict[str, str]:
    return {
        'FTP_HOST': click.prompt('FTP server hostname or IP'),
        'FTP_PORT': click.prompt('FTP port', default=21, type=click.IntRange(1, 65535)),
        'FTP_USER': click.prompt('FTP username'),
        'FTP_PASS': click.prompt('FTP password', hide_input=True),
        'FTP_PATH': click.prompt('FTP backup path', default='/jellyfin-backups'),
        'FTP_PASSIVE': 'true' if click.confirm('Use passive mode?', default=True) else 'false',
    }


def prompt_rclone() -> Dict[str, str]:
    click.echo("Note: configure the remote with 'rclone config' first.")
    return {
        'RCLONE_REMOTE': click.prompt("Rclone remote name (e.g. 'gdrive')").rstrip(':'),
        'RCLONE_PATH': click.prompt('Remote path', default='jellyfin-backups'),
    }


PROVIDER_PROMPTS = {
    'sftp': prompt_sftp,
    's3': prompt_s3,
    'nfs': prompt_nfs,
    'ftp': prompt_ftp,
    'rclone': prompt_rclone,
}


def encrypt_secrets(values: Dict[str, str], config_dir) -> Dict[str, str]:
    """Replace plaintext secrets with enc:<token> values."""
    secrets_present = [k for k in SECRET_KEYS if values.get(k)]
    if not secrets_present:
        return values

    cipher = CredentialCipher.for_config_dir(config_dir)
    cipher.create_key()
    encrypted = dict(values)
    for key in secrets_present:
        encrypted[key] = ENCRYPTED_PREFIX + cipher.encrypt(values[key])
    return encrypted


def run_wizard(config_path, config_dir) -> Dict[str, str]:
    """
    Prompt for the remote storage settings and write them to config_path.

    Returns:
        The values written (secrets encrypted), or an empty dict if cancelled
    """
    config_path = Path(config_path)
    click.echo('Guardian remote storage configuration')
    click.echo('')

    if config_path.exists() and not click.confirm(
        f'Remote storage configuration already exists at {config_path}. Reconfigure?', default=False
    ):
        click.echo('Configuration cancelled.')
        return {}

    if not click.confirm('Enable remote storage for backups?', default=True):
        values = {'REMOTE_STORAGE_ENABLED': 'false'}
        write_config_file(config_path, values)
        click.echo('Remote storage disabled. Local backups only.')
        return values

    provider = click.prompt('Storage type', type=click.Choice(PROVIDER_CHOICES), default='sftp')
    values = {'REMOTE_STORAGE_ENABLED': 'true', 'REMOTE_STORAGE_TYPE': provider}
    values.update({k: str(v) for k, v in PROVIDER_PROMPTS[provider]().items()})

    values['LOCAL_RETENTION'] = str(click.prompt('Keep last N backups locally (0 = all)', default=1, type=click.IntRange(min=0)))
    values['REMOTE_RETENTION'] = str(click.prompt('Keep last N backups remotely (0 = all)', default=3, type=click.IntRange(min=0)))
    values['AUTO_UPLOAD'] = 'true' if click.confirm('Upload automatically after each backup?', default=True) else 'false'
    values['DELETE_LOCAL_AFTER_UPLOAD'] = 'true' if click.confirm('Delete local backup after successful upload?', default=False) else 'false'
    values['VERIFY_REMOTE_UPLOAD'] = 'true' if click.confirm('Verify uploads by size?', default=True) else 'false'

    values = encrypt_secrets(values, config_dir)
    write_config_file(config_path, values)
    logger.info("Remote storage configuration saved to %s", config_path)
    click.echo(f'Configuration saved to: {config_path}')
    click.echo('Test it with: guardian --test-remote')
    return values
