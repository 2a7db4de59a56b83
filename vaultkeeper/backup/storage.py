"""
Storage handlers for backup artifacts and mirrored files.

Supports:
- S3Storage: Upload to S3 or an S3-compatible endpoint (Cloudflare R2)
- LocalStorage: Store in a local directory
"""

import asyncio
import logging
import os
import shutil
from pathlib import Path
from typing import List, Optional, Set

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from vaultkeeper.config import Config


logger = logging.getLogger(__name__)

# Files above this size are sent with multipart upload
MULTIPART_THRESHOLD = 100 * 1024 * 1024
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


class S3Storage:
    """
    Gateway to an S3-compatible bucket.

    Keys are used exactly as given; re-uploading a key replaces its content.
    """

    def __init__(self, access_key: Optional[str], secret_key: Optional[str], bucket_name: str,
                 region: str = 'us-east-1', endpoint_url: Optional[str] = None):
        """
        Initialize S3 storage handler.

        Args:
            access_key: Access key ID (None to use the default credential chain)
            secret_key: Secret access key
            bucket_name: Bucket name
            region: Region name ('auto' for R2)
            endpoint_url: Custom endpoint for S3-compatible providers
        """
        self.bucket_name = bucket_name
        self.region = region
        self.endpoint_url = endpoint_url

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                endpoint_url=endpoint_url
            )
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    async def put(self, local_path: str, key: str) -> str:
        """Upload a file without blocking the event loop. See upload()."""
        return await asyncio.to_thread(self.upload, local_path, key)

    async def list_keys(self, prefix: str) -> Set[str]:
        """
        Return the keys under prefix, with the prefix stripped.

        A listing failure is logged and reported as an empty set, so callers
        treat every file as missing and upload it again.
        """
        try:
            keys = await asyncio.to_thread(self.list_objects, prefix)
        except StorageError as e:
            logger.warning(f"Could not list existing objects under '{prefix}', assuming none exist: {e}")
            return set()

        return {key[len(prefix):] for key in keys if key.startswith(prefix) and len(key) > len(prefix)}

    def upload(self, local_path: str, key: str) -> str:
        """
        Upload a file to the bucket.

        Args:
            local_path: Path to local file
            key: Object key to write

        Returns:
            Object key of uploaded file

        Raises:
            StorageError: If upload fails
        """
        if not os.path.isfile(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        try:
            file_size = os.path.getsize(local_path)

            if file_size > MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, key)
            else:
                self._simple_upload(local_path, key)

            logger.debug(f"Uploaded {local_path} to s3://{self.bucket_name}/{key} ({file_size} bytes)")
            return key

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 upload failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 upload failed: {e}")
        except OSError as e:
            raise StorageError(f"Failed to read {local_path}: {e}")

    def _simple_upload(self, local_path: str, key: str):
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=f,
                ContentType='application/octet-stream'
            )

    def _multipart_upload(self, local_path: str, key: str):
        """Upload a large file in chunks; the upload is aborted if any part fails."""
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=key,
            ContentType='application/octet-stream'
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
                        Key=key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )
                    parts.append({'PartNumber': part_number, 'ETag': response['ETag']})
                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload for {key}: {abort_error}")
            raise

    def list_objects(self, prefix: str) -> List[str]:
        """
        List object keys with given prefix.

        Args:
            prefix: Key prefix to filter by

        Returns:
            List of full object keys

        Raises:
            StorageError: If listing fails
        """
        try:
            keys = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                for obj in page.get('Contents', []):
                    keys.append(obj['Key'])

            return keys

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 list failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to list S3 objects: {e}")

    def test_connection(self) -> bool:
        """
        Test connection and bucket access.

        Raises:
            StorageError: If connection test fails
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code == '404':
                raise StorageError(f"Bucket does not exist: {self.bucket_name}")
            elif error_code == '403':
                raise StorageError(f"Access denied to bucket: {self.bucket_name}")
            else:
                raise StorageError(f"S3 connection test failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to connect to S3: {e}")


class LocalStorage:
    """
    Handler for storing backups in the local filesystem.

    Files are placed under {base_path}/{relative_path}, mirroring object keys.
    """

    def __init__(self, base_path: str):
        self.base_path = Path(base_path).expanduser().resolve()

        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create local storage directory: {e}")

    def store(self, source_path: str, relative_path: str, move: bool = False) -> str:
        """
        Copy (or move) a file into local storage.

        Args:
            source_path: Path to source file
            relative_path: Destination path relative to base_path, '/'-separated
            move: Move instead of copy

        Returns:
            Full path of stored file

        Raises:
            StorageError: If storage fails
        """
        if not os.path.isfile(source_path):
            raise StorageError(f"Source file not found: {source_path}")

        dest_path = (self.base_path / relative_path).resolve()
        if self.base_path not in dest_path.parents:
            raise StorageError(f"Refusing to store outside of {self.base_path}: {relative_path}")

        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)

            if move:
                shutil.move(source_path, dest_path)
            else:
                shutil.copy2(source_path, dest_path)

            return str(dest_path)

        except PermissionError as e:
            raise StorageError(f"Permission denied writing to {dest_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to store locally: {e}")


def create_storage(config: Config) -> S3Storage:
    """
    Build the object storage gateway for the configured provider.

    Raises:
        StorageError: If the bucket is not configured or the client cannot be created
    """
    settings = config.storage
    if not settings.bucket:
        raise StorageError("AWS_S3_BUCKET is not configured")

    endpoint_url = settings.resolve_endpoint()
    logger.info(
        f"Using {settings.provider.upper()} storage, bucket {settings.bucket}"
        + (f" at {endpoint_url}" if endpoint_url else "")
    )

    return S3Storage(
        access_key=settings.access_key,
        secret_key=settings.secret_key,
        bucket_name=settings.bucket,
        region=settings.resolve_region(),
        endpoint_url=endpoint_url
    )
