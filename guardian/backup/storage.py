"""
Remote storage providers for backup artifacts.

Supports:
- SFTPStorage: Upload over SSH/SFTP (paramiko)
- S3Storage: Upload to S3 or an S3-compatible endpoint (boto3)
- NFSStorage: Copy onto a mounted NFS export
- FTPStorage: Upload over FTP (ftplib)
- RcloneStorage: Upload to any rclone remote

Every provider implements the same contract: upload, verify, list,
delete, cleanup (keep newest N) and test_connection. Remote artifacts
live flat in the provider's configured directory.
"""

import ftplib
import json
import logging
import os
import posixpath
import re
import shutil
import subprocess
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import boto3
import paramiko
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from paramiko import AutoAddPolicy, SSHClient

from .compression import ARTIFACT_PATTERN, TIMESTAMP_FORMAT, artifact_matcher
from .retention import SCOPE_REMOTE, RetentionFailure, RetentionReport, select_expired


logger = logging.getLogger(__name__)

VERIFIED = 'verified'
MISMATCH = 'mismatch'
UNKNOWN = 'unknown'

# Use multipart upload for files larger than 100MB
MULTIPART_THRESHOLD = 100 * 1024 * 1024
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024


class ReplicationFailure(Exception):
    """Raised when a remote storage operation fails."""
    pass


@dataclass(frozen=True)
class RemoteObject:
    name: str
    modified: Optional[datetime]
    size: Optional[int]

    def sort_key(self):
        when = self.modified or timestamp_from_name(self.name) or datetime.min
        if when.tzinfo is not None:
            when = when.astimezone(timezone.utc).replace(tzinfo=None)
        return (when, self.name)


def timestamp_from_name(name: str) -> Optional[datetime]:
    match = ARTIFACT_PATTERN.match(name)
    if not match:
        return None
    return datetime.strptime(match.group('timestamp'), TIMESTAMP_FORMAT)


class RemoteStorage(ABC):
    """
    Base class for remote storage providers.
    """

    provider = None

    def __init__(self, settings, timeout: int = 30):
        self.settings = settings
        self.timeout = timeout

    @property
    @abstractmethod
    def location(self) -> str:
        """Human-readable remote location."""

    @abstractmethod
    def upload(self, local_path) -> str:
        """
        Place the artifact in the remote directory, overwriting a same-named object.

        Returns:
            Remote location of the uploaded artifact

        Raises:
            ReplicationFailure: If upload fails
        """

    @abstractmethod
    def remote_size(self, filename: str) -> Optional[int]:
        """
        Size of a remote object in bytes, or None when the provider cannot tell.

        Raises:
            ReplicationFailure: If the query itself fails
        """

    @abstractmethod
    def list_files(self) -> List[RemoteObject]:
        """
        Raises:
            ReplicationFailure: If listing fails
        """

    @abstractmethod
    def delete(self, filename: str):
        """
        Raises:
            ReplicationFailure: If deletion fails
        """

    @abstractmethod
    def test_connection(self) -> bool:
        """
        Lightweight round trip to the remote.

        Raises:
            ReplicationFailure: If the remote is unreachable
        """

    def verify(self, local_path) -> str:
        """
        Compare the remote object's size with the local artifact.

        Returns:
            'verified' if sizes are equal, 'mismatch' if they differ,
            'unknown' if the provider cannot report a size. A failed size
            query (missing object, unreachable remote) is a mismatch.
        """
        local_path = Path(local_path)
        local_size = local_path.stat().st_size
        try:
            remote_size = self.remote_size(local_path.name)
        except ReplicationFailure as e:
            logger.error("Upload verification failed for %s - remote size query failed: %s", local_path.name, e)
            return MISMATCH

        if remote_size is None:
            logger.warning("Remote size not available from %s, upload not verified", self.provider)
            return UNKNOWN
        if remote_size == local_size:
            return VERIFIED

        logger.error(
            "Upload verification failed for %s - size mismatch (local: %d, remote: %d)",
            local_path.name, local_size, remote_size
        )
        return MISMATCH

    def list_artifacts(self, unit_name: str) -> List[RemoteObject]:
        """Remote artifacts of unit_name, newest first."""
        matcher = artifact_matcher(unit_name)
        artifacts = [obj for obj in self.list_files() if matcher.match(obj.name)]
        artifacts.sort(key=RemoteObject.sort_key, reverse=True)
        return artifacts

    def cleanup(self, unit_name: str, keep_count: int) -> RetentionReport:
        """
        Keep the newest keep_count remote artifacts of unit_name, delete the rest.

        Raises:
            RetentionFailure: If the remote listing fails
        """
        report = RetentionReport(scope=SCOPE_REMOTE, unit=unit_name, keep_count=keep_count)
        if keep_count <= 0:
            logger.info("Remote retention disabled (keep count 0)")
            return report

        logger.info("Cleaning up old remote backups on %s (keeping %d)", self.provider, keep_count)
        try:
            artifacts = self.list_artifacts(unit_name)
        except ReplicationFailure as e:
            raise RetentionFailure(f"Cannot list remote backups: {e}")

        report.found = len(artifacts)
        for obj in select_expired(artifacts, keep_count):
            try:
                self.delete(obj.name)
            except ReplicationFailure as e:
                report.errors.append(f"Failed to delete remote backup {obj.name}: {e}")
                continue
            report.deleted.append(obj.name)
            logger.info("Deleted old remote backup: %s", obj.name)

        logger.info("Remote cleanup: %d found, %d deleted", report.found, len(report.deleted))
        return report


class SFTPStorage(RemoteStorage):
    """
    Handler for uploading backups over SFTP.
    """

    provider = 'sftp'

    @property
    def location(self) -> str:
        s = self.settings
        return f"{s.username}@{s.host}:{s.path}"

    @contextmanager
    def _session(self):
        """
        Open an SSH connection and SFTP channel for one operation.

        Raises:
            ReplicationFailure: If connection fails
        """
        s = self.settings
        ssh_client = SSHClient()
        ssh_client.set_missing_host_key_policy(AutoAddPolicy())

        connect_kwargs = {
            'hostname': s.host,
            'port': s.port,
            'username': s.username,
            'timeout': self.timeout,
            'banner_timeout': self.timeout,
            'auth_timeout': self.timeout,
        }
        if s.key_file:
            key_path = Path(s.key_file).expanduser()
            if not key_path.exists():
                raise ReplicationFailure(f"SSH key file not found: {s.key_file}")
            connect_kwargs['key_filename'] = str(key_path)
        if s.password:
            connect_kwargs['password'] = s.password

        try:
            ssh_client.connect(**connect_kwargs)
            sftp_client = ssh_client.open_sftp()
        except paramiko.AuthenticationException as e:
            ssh_client.close()
            raise ReplicationFailure(f"SFTP authentication failed: {e}")
        except (paramiko.SSHException, OSError) as e:
            ssh_client.close()
            raise ReplicationFailure(f"SFTP connection to {s.host} failed: {e}")

        try:
            yield sftp_client
        finally:
            sftp_client.close()
            ssh_client.close()

    def _remote_path(self, filename: str) -> str:
        return posixpath.join(self.settings.path, filename)

    def _makedirs(self, sftp_client, path: str):
        current = '/' if path.startswith('/') else ''
        for part in [p for p in path.split('/') if p]:
            current = posixpath.join(current, part) if current else part
            try:
                sftp_client.stat(current)
            except FileNotFoundError:
                sftp_client.mkdir(current)

    def upload(self, local_path) -> str:
        local_path = Path(local_path)
        remote_path = self._remote_path(local_path.name)
        with self._session() as sftp_client:
            try:
                self._makedirs(sftp_client, self.settings.path)
                sftp_client.put(str(local_path), remote_path)
            except PermissionError:
                raise ReplicationFailure(f"Permission denied writing {remote_path}")
            except (OSError, paramiko.SSHException) as e:
                raise ReplicationFailure(f"SFTP upload of {local_path.name} failed: {e}")
        return f"{self.location}/{local_path.name}"

    def remote_size(self, filename: str) -> Optional[int]:
        with self._session() as sftp_client:
            try:
                return sftp_client.stat(self._remote_path(filename)).st_size
            except FileNotFoundError:
                raise ReplicationFailure(f"Remote file not found: {filename}")
            except (OSError, paramiko.SSHException) as e:
                raise ReplicationFailure(f"SFTP stat of {filename} failed: {e}")

    def list_files(self) -> List[RemoteObject]:
        with self._session() as sftp_client:
            try:
                entries = sftp_client.listdir_attr(self.settings.path)
            except FileNotFoundError:
                return []
            except (OSError, paramiko.SSHException) as e:
                raise ReplicationFailure(f"SFTP listing of {self.settings.path} failed: {e}")

        return [
            RemoteObject(
                name=entry.filename,
                modified=datetime.fromtimestamp(entry.st_mtime) if entry.st_mtime else None,
                size=entry.st_size
            )
            for entry in entries
            if not (entry.st_mode or 0) & 0o040000
        ]

    def delete(self, filename: str):
        with self._session() as sftp_client:
            try:
                sftp_client.remove(self._remote_path(filename))
            except (OSError, paramiko.SSHException) as e:
                raise ReplicationFailure(f"SFTP delete of {filename} failed: {e}")

    def test_connection(self) -> bool:
        with self._session() as sftp_client:
            try:
                sftp_client.listdir(self.settings.path)
            except FileNotFoundError:
                # Created on first upload
                sftp_client.listdir('.')
            except (OSError, paramiko.SSHException) as e:
                raise ReplicationFailure(f"SFTP connection test failed: {e}")
        return True


class S3Storage(RemoteStorage):
    """
    Handler for uploading backups to S3.

    Objects are stored as {path}/{filename} in the configured bucket.
    """

    provider = 's3'

    def __init__(self, settings, timeout: int = 30):
        super().__init__(settings, timeout)
        self.bucket_name = settings.bucket
        self.prefix = f"{settings.path.strip('/')}/" if settings.path.strip('/') else ''

        client_kwargs = {
            'region_name': settings.region,
            'config': BotoConfig(connect_timeout=timeout, read_timeout=timeout * 4, retries={'max_attempts': 3}),
        }
        if settings.endpoint:
            client_kwargs['endpoint_url'] = settings.endpoint
        if settings.access_key and settings.secret_key:
            client_kwargs['aws_access_key_id'] = settings.access_key
            client_kwargs['aws_secret_access_key'] = settings.secret_key

        try:
            self.s3_client = boto3.client('s3', **client_kwargs)
        except (BotoCoreError, ValueError) as e:
            raise ReplicationFailure(f"Failed to initialize S3 client: {e}")

    @property
    def location(self) -> str:
        return f"s3://{self.bucket_name}/{self.prefix}"

    def _key(self, filename: str) -> str:
        return f"{self.prefix}{filename}"

    @staticmethod
    def _error(action: str, e: Exception) -> ReplicationFailure:
        if isinstance(e, ClientError):
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            return ReplicationFailure(f"S3 {action} failed ({error_code}): {e}")
        return ReplicationFailure(f"S3 {action} failed: {e}")

    def upload(self, local_path) -> str:
        local_path = Path(local_path)
        if not local_path.exists():
            raise ReplicationFailure(f"Local file not found: {local_path}")

        s3_key = self._key(local_path.name)
        file_size = local_path.stat().st_size
        try:
            if file_size > MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, s3_key)
            else:
                self._simple_upload(local_path, s3_key)
        except (ClientError, BotoCoreError) as e:
            raise self._error('upload', e)
        except OSError as e:
            raise ReplicationFailure(f"Failed to read {local_path}: {e}")

        return f"s3://{self.bucket_name}/{s3_key}"

    def _simple_upload(self, local_path: Path, s3_key: str):
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=s3_key,
                Body=f
            )

    def _multipart_upload(self, local_path: Path, s3_key: str):
        """
        Upload large file in 10MB parts, aborting the upload on any error.
        """
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=s3_key
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    data = f.read(MULTIPART_CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=s3_key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )

                    parts.append({
                        'PartNumber': part_number,
                        'ETag': response['ETag']
                    })

                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=s3_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except BaseException:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning("Could not abort multipart upload %s: %s", upload_id, abort_error)
            raise

    def remote_size(self, filename: str) -> Optional[int]:
        try:
            response = self.s3_client.head_object(Bucket=self.bucket_name, Key=self._key(filename))
        except (ClientError, BotoCoreError) as e:
            raise self._error('head-object', e)
        return response.get('ContentLength')

    def list_files(self) -> List[RemoteObject]:
        try:
            objects = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=self.prefix):
                for obj in page.get('Contents', []):
                    name = obj['Key'][len(self.prefix):]
                    if '/' in name:
                        continue
                    objects.append(RemoteObject(
                        name=name,
                        modified=obj['LastModified'],
                        size=obj['Size']
                    ))

            return objects

        except (ClientError, BotoCoreError) as e:
            raise self._error('list', e)

    def delete(self, filename: str):
        try:
            self.s3_client.delete_object(
                Bucket=self.bucket_name,
                Key=self._key(filename)
            )
        except (ClientError, BotoCoreError) as e:
            raise self._error('delete', e)

    def test_connection(self) -> bool:
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code in ('404', 'NoSuchBucket'):
                raise ReplicationFailure(f"Bucket does not exist: {self.bucket_name}")
            elif error_code == '403':
                raise ReplicationFailure(f"Access denied to bucket: {self.bucket_name}")
            else:
                raise ReplicationFailure(f"S3 connection test failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise ReplicationFailure(f"Failed to connect to S3: {e}")


class NFSStorage(RemoteStorage):
    """
    Handler for copying backups onto an NFS export.

    The export is mounted at the configured mount point when it is not
    already; artifacts go to {mount_point}/{subdir}.
    """

    provider = 'nfs'

    def __init__(self, settings, timeout: int = 30):
        super().__init__(settings, timeout)
        self.mount_point = Path(settings.mount_point)
        self.target_dir = self.mount_point / settings.subdir if settings.subdir else self.mount_point

    @property
    def location(self) -> str:
        return f"{self.settings.host}:{self.settings.export_path} ({self.target_dir})"

    def ensure_mounted(self):
        """
        Raises:
            ReplicationFailure: If the export cannot be mounted
        """
        if os.path.ismount(self.mount_point):
            return

        s = self.settings
        logger.info("Mounting NFS share %s:%s at %s", s.host, s.export_path, self.mount_point)
        try:
            self.mount_point.mkdir(parents=True, exist_ok=True)
            subprocess.run(
                ['mount', '-t', 'nfs', '-o', s.options, f"{s.host}:{s.export_path}", str(self.mount_point)],
                check=True,
                capture_output=True,
                text=True,
                timeout=self.timeout
            )
        except subprocess.CalledProcessError as e:
            raise ReplicationFailure(f"Failed to mount NFS share: {e.stderr.strip() or e}")
        except (subprocess.TimeoutExpired, OSError) as e:
            raise ReplicationFailure(f"Failed to mount NFS share: {e}")

    def upload(self, local_path) -> str:
        local_path = Path(local_path)
        self.ensure_mounted()
        destination = self.target_dir / local_path.name
        try:
            self.target_dir.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(local_path, destination)
        except OSError as e:
            raise ReplicationFailure(f"NFS copy of {local_path.name} failed: {e}")
        return str(destination)

    def remote_size(self, filename: str) -> Optional[int]:
        try:
            return (self.target_dir / filename).stat().st_size
        except OSError as e:
            raise ReplicationFailure(f"NFS stat of {filename} failed: {e}")

    def list_files(self) -> List[RemoteObject]:
        self.ensure_mounted()
        if not self.target_dir.is_dir():
            return []
        try:
            objects = []
            for entry in os.scandir(self.target_dir):
                if entry.is_file():
                    stat = entry.stat()
                    objects.append(RemoteObject(
                        name=entry.name,
                        modified=datetime.fromtimestamp(stat.st_mtime),
                        size=stat.st_size
                    ))
            return objects
        except OSError as e:
            raise ReplicationFailure(f"NFS listing of {self.target_dir} failed: {e}")

    def delete(self, filename: str):
        try:
            (self.target_dir / filename).unlink()
        except OSError as e:
            raise ReplicationFailure(f"NFS delete of {filename} failed: {e}")

    def test_connection(self) -> bool:
        self.ensure_mounted()
        probe = self.target_dir if self.target_dir.exists() else self.mount_point
        if not os.access(probe, os.W_OK):
            raise ReplicationFailure(f"NFS path is not writable: {probe}")
        return True


class FTPStorage(RemoteStorage):
    """
    Handler for uploading backups over FTP.
    """

    provider = 'ftp'

    @property
    def location(self) -> str:
        s = self.settings
        return f"ftp://{s.username}@{s.host}:{s.port}{s.path}"

    @contextmanager
    def _session(self, create_dir: bool = False):
        s = self.settings
        ftp = ftplib.FTP(timeout=self.timeout)
        try:
            ftp.connect(s.host, s.port)
            ftp.login(s.username, s.password)
            ftp.set_pasv(s.passive)
            if create_dir:
                self._makedirs(ftp, s.path)
            else:
                ftp.cwd(s.path)
        except ftplib.all_errors as e:
            ftp.close()
            raise ReplicationFailure(f"FTP connection to {s.host} failed: {e}")

        try:
            yield ftp
        finally:
            try:
                ftp.quit()
            except ftplib.all_errors:
                ftp.close()

    @staticmethod
    def _makedirs(ftp, path: str):
        if path.startswith('/'):
            ftp.cwd('/')
        for part in [p for p in path.split('/') if p]:
            try:
                ftp.cwd(part)
            except ftplib.error_perm:
                ftp.mkd(part)
                ftp.cwd(part)

    def upload(self, local_path) -> str:
        local_path = Path(local_path)
        with self._session(create_dir=True) as ftp:
            try:
                with open(local_path, 'rb') as f:
                    ftp.storbinary(f"STOR {local_path.name}", f)
            except ftplib.all_errors as e:
                raise ReplicationFailure(f"FTP upload of {local_path.name} failed: {e}")
        return f"{self.location}/{local_path.name}"

    def remote_size(self, filename: str) -> Optional[int]:
        with self._session() as ftp:
            try:
                ftp.voidcmd('TYPE I')
                return ftp.size(filename)
            except ftplib.error_perm as e:
                # SIZE not supported by this server
                logger.debug("FTP SIZE rejected for %s: %s", filename, e)
                return None
            except ftplib.all_errors as e:
                raise ReplicationFailure(f"FTP SIZE of {filename} failed: {e}")

    def list_files(self) -> List[RemoteObject]:
        with self._session() as ftp:
            try:
                return self._list_mlsd(ftp)
            except ftplib.error_perm:
                logger.debug("MLSD not supported, falling back to NLST")
            except ftplib.all_errors as e:
                raise ReplicationFailure(f"FTP listing failed: {e}")

            try:
                names = ftp.nlst()
            except ftplib.error_perm:
                # Empty directory on some servers
                return []
            except ftplib.all_errors as e:
                raise ReplicationFailure(f"FTP listing failed: {e}")

        return [RemoteObject(name=posixpath.basename(n), modified=None, size=None) for n in names]

    @staticmethod
    def _list_mlsd(ftp) -> List[RemoteObject]:
        objects = []
        for name, facts in ftp.mlsd(facts=['type', 'size', 'modify']):
            if facts.get('type', 'file') != 'file':
                continue
            modified = None
            if facts.get('modify'):
                modified = datetime.strptime(facts['modify'][:14], '%Y%m%d%H%M%S')
            size = int(facts['size']) if facts.get('size') else None
            objects.append(RemoteObject(name=name, modified=modified, size=size))
        return objects

    def delete(self, filename: str):
        with self._session() as ftp:
            try:
                ftp.delete(filename)
            except ftplib.all_errors as e:
                raise ReplicationFailure(f"FTP delete of {filename} failed: {e}")

    def test_connection(self) -> bool:
        with self._session(create_dir=True) as ftp:
            try:
                ftp.voidcmd('NOOP')
            except ftplib.all_errors as e:
                raise ReplicationFailure(f"FTP connection test failed: {e}")
        return True


class RcloneStorage(RemoteStorage):
    """
    Handler for uploading backups through the rclone CLI.
    """

    provider = 'rclone'

    @property
    def location(self) -> str:
        return f"{self.settings.remote}:{self.settings.path}"

    def _remote_path(self, filename: Optional[str] = None) -> str:
        path = self.settings.path.rstrip('/')
        if filename:
            path = f"{path}/{filename}" if path else filename
        return f"{self.settings.remote}:{path}"

    def _run(self, *args, timeout: Optional[int] = None) -> str:
        binary = shutil.which('rclone')
        if binary is None:
            raise ReplicationFailure("rclone is not installed")

        command = [binary, *args, '--contimeout', f"{self.timeout}s", '--timeout', f"{self.timeout * 10}s"]
        try:
            result = subprocess.run(command, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired:
            raise ReplicationFailure(f"rclone {args[0]} timed out")
        except OSError as e:
            raise ReplicationFailure(f"Failed to run rclone: {e}")

        if result.returncode != 0:
            raise ReplicationFailure(f"rclone {args[0]} failed: {result.stderr.strip()}")
        return result.stdout

    def upload(self, local_path) -> str:
        local_path = Path(local_path)
        destination = self._remote_path(local_path.name)
        self._run('copyto', str(local_path), destination)
        return destination

    def remote_size(self, filename: str) -> Optional[int]:
        entries = self._lsjson(self._remote_path(filename))
        if not entries:
            raise ReplicationFailure(f"Remote file not found: {filename}")
        size = entries[0].get('Size', -1)
        return size if size >= 0 else None

    def _lsjson(self, target: str, *flags) -> list:
        output = self._run('lsjson', *flags, target, timeout=self.timeout * 4)
        try:
            return json.loads(output or '[]')
        except ValueError as e:
            raise ReplicationFailure(f"Unexpected rclone output: {e}")

    @staticmethod
    def _parse_modtime(value: Optional[str]) -> Optional[datetime]:
        if not value:
            return None
        value = re.sub(r'(\.\d{6})\d+', r'\1', value.replace('Z', '+00:00'))
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return None

    def list_files(self) -> List[RemoteObject]:
        try:
            entries = self._lsjson(self._remote_path(), '--files-only')
        except ReplicationFailure as e:
            if 'directory not found' in str(e).lower():
                return []
            raise
        return [
            RemoteObject(
                name=entry['Name'],
                modified=self._parse_modtime(entry.get('ModTime')),
                size=entry.get('Size')
            )
            for entry in entries
        ]

    def delete(self, filename: str):
        self._run('deletefile', self._remote_path(filename))

    def test_connection(self) -> bool:
        self._run('lsd', f"{self.settings.remote}:", timeout=self.timeout * 2)
        return True


PROVIDERS = {
    'sftp': SFTPStorage,
    's3': S3Storage,
    'nfs': NFSStorage,
    'ftp': FTPStorage,
    'rclone': RcloneStorage,
}


def create_storage(remote_target) -> RemoteStorage:
    """
    Factory function to create the provider for a RemoteTarget.

    Raises:
        ValueError: If the provider tag is unknown
    """
    try:
        storage_cls = PROVIDERS[remote_target.provider]
    except KeyError:
        raise ValueError(f"Invalid remote storage type: {remote_target.provider}")
    return storage_cls(remote_target.settings, timeout=remote_target.timeout)
