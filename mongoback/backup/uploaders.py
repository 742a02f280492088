"""
Destination uploaders for backup archives.

Supports:
- SFTPUploader: Upload to a remote host via SSH/SFTP
- S3Uploader: Upload to AWS S3 or an S3-compatible provider
- GCloudUploader: Upload to Google Cloud Storage via gsutil
- AzureUploader: Upload to Azure Blob Storage via the az CLI
- RcloneUploader: Upload to any rclone remote

Every uploader implements upload(file_path, plan) and returns a diagnostic
message, raising UploadFailed on error.
"""

import logging
import os
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List

import boto3
import paramiko
from botocore.exceptions import BotoCoreError, ClientError
from paramiko import AutoAddPolicy, SSHClient

from .errors import UploadFailed
from .types import AzureConfig, GCloudConfig, Plan, RcloneConfig, S3Config, SFTPConfig

logger = logging.getLogger(__name__)

CLI_TIMEOUT = 60 * 60
MULTIPART_THRESHOLD = 100 * 1024 * 1024
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024


class Uploader(ABC):
    """Capability interface shared by all destination kinds."""

    kind = ''

    @abstractmethod
    def upload(self, file_path: str, plan: Plan) -> str:
        """
        Upload a file for a plan.

        Returns:
            Diagnostic message

        Raises:
            UploadFailed: If the upload fails
        """


class SFTPUploader(Uploader):
    """Uploads archives to {dir}/{filename} on an SFTP server."""

    kind = 'sftp'

    def __init__(self, config: SFTPConfig):
        self.config = config

    def _connect(self) -> SSHClient:
        cfg = self.config
        connect_kwargs = {
            'hostname': cfg.host,
            'port': cfg.port,
            'username': cfg.username,
            'timeout': 30,
        }
        if cfg.password:
            connect_kwargs['password'] = cfg.password
        elif cfg.private_key:
            key_path = Path(cfg.private_key).expanduser()
            if not key_path.exists():
                raise UploadFailed(self.kind, f"Private key not found: {cfg.private_key}")
            connect_kwargs['key_filename'] = str(key_path)
            if cfg.passphrase:
                connect_kwargs['passphrase'] = cfg.passphrase
        else:
            raise UploadFailed(self.kind, "Either password or private_key must be provided")

        client = SSHClient()
        client.set_missing_host_key_policy(AutoAddPolicy())
        try:
            client.connect(**connect_kwargs)
        except Exception:
            client.close()
            raise
        return client

    def upload(self, file_path: str, plan: Plan) -> str:
        filename = os.path.basename(file_path)
        remote_path = f"{self.config.dir.rstrip('/')}/{filename}" if self.config.dir else filename

        client = None
        try:
            client = self._connect()
            sftp = client.open_sftp()
            try:
                sftp.put(file_path, remote_path)
            finally:
                sftp.close()
        except UploadFailed:
            raise
        except paramiko.AuthenticationException as e:
            raise UploadFailed(self.kind, f"SFTP authentication failed: {e}") from e
        except (paramiko.SSHException, OSError) as e:
            raise UploadFailed(self.kind, f"SFTP upload to {self.config.host} failed: {e}") from e
        finally:
            if client is not None:
                client.close()

        return f"SFTP upload finished {file_path} -> {self.config.host}:{remote_path}"


class S3Uploader(Uploader):
    """
    Uploads archives to S3 with the key format {prefix}/{plan}/{filename}.

    Files larger than 100MB are sent with a multipart upload that is aborted
    on failure.
    """

    kind = 's3'

    def __init__(self, config: S3Config, client=None):
        self.config = config
        self._client = client

    @property
    def s3_client(self):
        if self._client is None:
            cfg = self.config
            self._client = boto3.client(
                's3',
                aws_access_key_id=cfg.access_key or None,
                aws_secret_access_key=cfg.secret_key or None,
                region_name=cfg.region,
                endpoint_url=cfg.endpoint_url or None,
            )
        return self._client

    def object_key(self, file_path: str, plan: Plan) -> str:
        parts = [self.config.prefix.strip('/'), plan.name, os.path.basename(file_path)]
        return '/'.join(part for part in parts if part)

    def upload(self, file_path: str, plan: Plan) -> str:
        if not os.path.exists(file_path):
            raise UploadFailed(self.kind, f"Local file not found: {file_path}")

        key = self.object_key(file_path, plan)
        extra = {'StorageClass': self.config.storage_class} if self.config.storage_class else {}

        try:
            file_size = os.path.getsize(file_path)
            if file_size > MULTIPART_THRESHOLD:
                self._multipart_upload(file_path, key, extra)
            else:
                with open(file_path, 'rb') as f:
                    self.s3_client.put_object(Bucket=self.config.bucket, Key=key, Body=f, **extra)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise UploadFailed(self.kind, f"S3 upload failed ({error_code}): {e}") from e
        except (BotoCoreError, OSError) as e:
            raise UploadFailed(self.kind, f"S3 upload failed: {e}") from e

        return f"S3 upload finished s3://{self.config.bucket}/{key} ({file_size} bytes)"

    def _multipart_upload(self, file_path: str, key: str, extra: dict):
        bucket = self.config.bucket
        response = self.s3_client.create_multipart_upload(Bucket=bucket, Key=key, **extra)
        upload_id = response['UploadId']
        parts = []

        try:
            with open(file_path, 'rb') as f:
                part_number = 1
                while True:
                    data = f.read(MULTIPART_CHUNK_SIZE)
                    if not data:
                        break
                    response = self.s3_client.upload_part(
                        Bucket=bucket,
                        Key=key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data,
                    )
                    parts.append({'PartNumber': part_number, 'ETag': response['ETag']})
                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts},
            )
        except Exception:
            try:
                self.s3_client.abort_multipart_upload(Bucket=bucket, Key=key, UploadId=upload_id)
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Aborting multipart upload {upload_id} failed: {abort_error}")
            raise


def _run_cli(kind: str, cmd: List[str], timeout: int = CLI_TIMEOUT) -> str:
    """Run an upload CLI and return its combined output."""
    try:
        proc = subprocess.run(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            timeout=timeout,
            check=True,
        )
    except subprocess.TimeoutExpired as e:
        raise UploadFailed(kind, f"{cmd[0]} timed out after {timeout} seconds") from e
    except subprocess.CalledProcessError as e:
        output = (e.output or b'').decode(errors='replace').replace('\n', ' ').strip()
        raise UploadFailed(kind, f"{cmd[0]} exited with code {e.returncode}: {output}") from e
    except OSError as e:
        raise UploadFailed(kind, f"Failed to run {cmd[0]}: {e}") from e

    return (proc.stdout or b'').decode(errors='replace').strip()


class GCloudUploader(Uploader):
    """Uploads archives to gs://{bucket}/{filename} using gsutil."""

    kind = 'gcloud'

    def __init__(self, config: GCloudConfig):
        self.config = config

    def upload(self, file_path: str, plan: Plan) -> str:
        if self.config.key_file_path:
            _run_cli(self.kind, [
                'gcloud', 'auth', 'activate-service-account',
                f"--key-file={self.config.key_file_path}",
            ])

        destination = f"gs://{self.config.bucket}/{os.path.basename(file_path)}"
        output = _run_cli(self.kind, ['gsutil', 'cp', file_path, destination])
        return f"GCloud upload finished {destination} {output}".strip()


class AzureUploader(Uploader):
    """Uploads archives as blobs named after the file using the az CLI."""

    kind = 'azure'

    def __init__(self, config: AzureConfig):
        self.config = config

    def upload(self, file_path: str, plan: Plan) -> str:
        blob_name = os.path.basename(file_path)
        output = _run_cli(self.kind, [
            'az', 'storage', 'blob', 'upload',
            '--container-name', self.config.container_name,
            '--connection-string', self.config.connection_string,
            '--file', file_path,
            '--name', blob_name,
            '--overwrite', 'true',
        ])
        return f"Azure upload finished {self.config.container_name}/{blob_name} {output}".strip()


class RcloneUploader(Uploader):
    """Copies archives to an rclone remote ({config_section}:{bucket})."""

    kind = 'rclone'

    def __init__(self, config: RcloneConfig):
        self.config = config

    def upload(self, file_path: str, plan: Plan) -> str:
        cfg = self.config
        destination = f"{cfg.config_section}:{cfg.bucket}" if cfg.config_section else cfg.bucket

        cmd = ['rclone']
        if cfg.config_file_path:
            cmd.append(f"--config={cfg.config_file_path}")
        cmd.extend(['copy', file_path, destination])

        output = _run_cli(self.kind, cmd)
        return f"Rclone upload finished {destination} {output}".strip()


def build_uploaders(plan: Plan) -> List[Uploader]:
    """
    Create the uploaders configured on a plan, in upload order.

    Args:
        plan: Backup plan

    Returns:
        List of uploaders (SFTP, S3, GCloud, Azure, Rclone as configured)
    """
    uploaders: List[Uploader] = []
    if plan.sftp is not None:
        uploaders.append(SFTPUploader(plan.sftp))
    if plan.s3 is not None:
        uploaders.append(S3Uploader(plan.s3))
    if plan.gcloud is not None:
        uploaders.append(GCloudUploader(plan.gcloud))
    if plan.azure is not None:
        uploaders.append(AzureUploader(plan.azure))
    if plan.rclone is not None:
        uploaders.append(RcloneUploader(plan.rclone))
    return uploaders
