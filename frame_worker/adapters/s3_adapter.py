"""
AWS S3 adapter for object storage.

Works against AWS S3 and S3-compatible buckets (R2, MinIO) through
an optional endpoint URL.
"""

import boto3
import logging
from typing import Optional
from botocore.exceptions import ClientError

from .base import ObjectStore
from ..exceptions import StorageError

logger = logging.getLogger("frame_worker")

NOT_FOUND_CODES = ("404", "NoSuchKey", "NotFound")


class S3ObjectStore(ObjectStore):
    """AWS S3 implementation of the object store"""

    def __init__(self, bucket: str, region: str = "us-east-1", prefix: str = "",
                 endpoint_url: Optional[str] = None, public_url: Optional[str] = None):
        self.bucket = bucket
        self.region = region
        self.prefix = prefix
        self.endpoint_url = endpoint_url
        self.public_url = public_url.rstrip("/") if public_url else None
        self.s3 = None

    def connect(self):
        """Initialize S3 client"""
        try:
            self.s3 = boto3.client('s3', region_name=self.region, endpoint_url=self.endpoint_url)
            logger.info(f"S3 storage connected to bucket: {self.bucket}")
        except Exception as e:
            logger.error(f"Failed to connect to S3: {e}")
            raise

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def upload(self, key: str, data: bytes, content_type: str) -> str:
        try:
            self.s3.put_object(
                Bucket=self.bucket,
                Key=self._key(key),
                Body=data,
                ContentType=content_type
            )
        except ClientError as e:
            logger.error(f"Error uploading {key} to S3: {e}")
            raise StorageError(f"Failed to upload {key}: {e}") from e
        return key

    def download(self, key: str) -> bytes:
        try:
            response = self.s3.get_object(Bucket=self.bucket, Key=self._key(key))
            return response['Body'].read()
        except ClientError as e:
            logger.error(f"Error downloading {key} from S3: {e}")
            raise StorageError(f"Failed to download {key}: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self.s3.delete_object(Bucket=self.bucket, Key=self._key(key))
        except ClientError as e:
            logger.error(f"Error deleting {key} from S3: {e}")
            raise StorageError(f"Failed to delete {key}: {e}") from e

    def exists(self, key: str) -> bool:
        try:
            self.s3.head_object(Bucket=self.bucket, Key=self._key(key))
            return True
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') in NOT_FOUND_CODES:
                return False
            raise StorageError(f"Failed to check {key}: {e}") from e

    def signed_url(self, key: str, expires_in: int) -> str:
        if self.public_url:
            return f"{self.public_url}/{self._key(key)}"
        try:
            return self.s3.generate_presigned_url(
                'get_object',
                Params={'Bucket': self.bucket, 'Key': self._key(key)},
                ExpiresIn=expires_in
            )
        except ClientError as e:
            raise StorageError(f"Failed to sign URL for {key}: {e}") from e

    def close(self):
        """Close S3 connection"""
        self.s3 = None
        logger.info("S3 storage connection closed")
