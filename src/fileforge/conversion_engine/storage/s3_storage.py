"""
S3 Storage Provider
Implements StorageProvider for AWS S3 compatible storage (e.g., MinIO).
"""

import logging

# Optional boto3 dependency for S3 storage
try:
    import boto3
    from botocore.exceptions import ClientError

    _BOTO3_AVAILABLE = True
except ImportError:
    boto3 = None  # type: ignore
    ClientError = Exception  # type: ignore
    _BOTO3_AVAILABLE = False

from fileforge.config.settings import Settings
from fileforge.conversion_engine.storage.storage_interface import StorageProvider

logger = logging.getLogger(__name__)

_MISSING_CODES = {"404", "NoSuchKey", "NoSuchBucket", "NotFound"}


class S3StorageProvider(StorageProvider):
    def __init__(self, settings: Settings, *, client=None):
        if client is None and not _BOTO3_AVAILABLE:
            raise ImportError(
                "boto3 is required for S3 storage. Install with: pip install fileforge[s3]"
            )
        self.bucket_name = settings.S3_BUCKET_NAME
        self.region_name = settings.S3_REGION_NAME
        self._endpoint_url = settings.S3_ENDPOINT_URL
        self._public_endpoint_url = (
            settings.S3_PUBLIC_ENDPOINT_URL.strip() or self._endpoint_url
        )

        self.s3_client = client or boto3.client(
            "s3",
            endpoint_url=self._endpoint_url,
            aws_access_key_id=settings.S3_ACCESS_KEY_ID,
            aws_secret_access_key=settings.S3_SECRET_ACCESS_KEY,
            region_name=settings.S3_REGION_NAME,
        )
        self._presign_client = (
            self.s3_client
            if client is not None or self._public_endpoint_url == self._endpoint_url
            else boto3.client(
                "s3",
                endpoint_url=self._public_endpoint_url,
                aws_access_key_id=settings.S3_ACCESS_KEY_ID,
                aws_secret_access_key=settings.S3_SECRET_ACCESS_KEY,
                region_name=settings.S3_REGION_NAME,
            )
        )

    @staticmethod
    def _is_missing(error) -> bool:
        code = str(getattr(error, "response", {}).get("Error", {}).get("Code", ""))
        return code in _MISSING_CODES

    def get(self, key: str) -> bytes:
        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            if self._is_missing(e):
                raise FileNotFoundError(f"File not found: {key}") from e
            logger.error(f"Failed to download {key} from S3: {e}")
            raise
        return response["Body"].read()

    def put(self, key: str, data: bytes, content_type: str) -> str:
        try:
            self.s3_client.put_object(
                Bucket=self.bucket_name, Key=key, Body=data, ContentType=content_type
            )
        except ClientError as e:
            logger.error(f"Failed to upload {key} to S3: {e}")
            raise
        logger.info(f"File {key} uploaded to S3 bucket {self.bucket_name}")
        return key

    def signed_url(self, key: str, ttl_seconds: int = 3600) -> str:
        try:
            return self._presign_client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket_name, "Key": key},
                ExpiresIn=int(ttl_seconds),
            )
        except ClientError as e:
            logger.error(f"Failed to generate presigned URL for {key}: {e}")
            raise

    def exists(self, key: str) -> bool:
        try:
            self.s3_client.head_object(Bucket=self.bucket_name, Key=key)
            return True
        except ClientError as e:
            if self._is_missing(e):
                return False
            raise

    def delete(self, key: str) -> None:
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            logger.error(f"Failed to delete {key} from S3: {e}")
            raise

    def ensure_bucket(self) -> bool:
        """Creates the bucket when missing. Returns True if it was created."""
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return False
        except ClientError as e:
            if not self._is_missing(e):
                raise
        if self.region_name == "us-east-1":
            self.s3_client.create_bucket(Bucket=self.bucket_name)
        else:
            self.s3_client.create_bucket(
                Bucket=self.bucket_name,
                CreateBucketConfiguration={"LocationConstraint": self.region_name},
            )
        logger.info(f"Created S3 bucket {self.bucket_name}")
        return True
