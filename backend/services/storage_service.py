"""
Storage Service (Host Document)
===============================
Where committed composites go.

The editor hands a finished PNG to a HostDocument. The default host writes
through a storage provider so the provider can be switched:
- Local filesystem (development)
- AWS S3 (production)
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional
import os
import time
import uuid

from errors import HostIntegrationError
from logging_setup import get_logger

logger = get_logger(__name__)

DOWNLOAD_PREFIX = "text-behind-image"


def download_filename(epoch_ms: Optional[int] = None) -> str:
    """File name for the local-download path: text-behind-image-<epoch ms>.png"""
    if epoch_ms is None:
        epoch_ms = int(time.time() * 1000)
    return f"{DOWNLOAD_PREFIX}-{epoch_ms}.png"


@dataclass
class StorageResult:
    """Result from saving a composite to storage."""
    output_id: str
    location: str  # File path or s3:// URI


class StorageProvider(ABC):
    """Abstract base class for storage providers."""

    @abstractmethod
    async def save_png(self, png_bytes: bytes, output_id: str) -> StorageResult:
        """
        Persist a PNG.

        Args:
            png_bytes: Encoded composite
            output_id: Unique identifier, used as the file stem

        Returns:
            StorageResult with the stored location
        """
        pass


class LocalStorageProvider(StorageProvider):
    """
    Local filesystem storage for development.

    Stores composites in the outputs/ directory.
    """

    def __init__(self, output_dir: str = "outputs"):
        self.output_dir = output_dir

    async def save_png(self, png_bytes: bytes, output_id: str) -> StorageResult:
        """Save PNG to the local filesystem."""
        os.makedirs(self.output_dir, exist_ok=True)
        filepath = os.path.join(self.output_dir, f"{output_id}.png")
        with open(filepath, "wb") as f:
            f.write(png_bytes)
        return StorageResult(output_id=output_id, location=filepath)


class S3StorageProvider(StorageProvider):
    """AWS S3 storage provider for production."""

    def __init__(
        self,
        bucket: str,
        region: str = "ap-south-1",
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        client=None,
    ):
        """
        Initialize S3 storage provider.

        Args:
            bucket: S3 bucket name
            region: AWS region
            access_key_id: AWS access key (uses env/IAM role if None)
            secret_access_key: AWS secret key (uses env/IAM role if None)
            client: Pre-built boto3 S3 client (tests, custom endpoints)
        """
        self.bucket = bucket
        self.region = region
        self.prefix = "composites/"  # S3 key prefix

        if client is None:
            import boto3

            client_kwargs = {"region_name": region}
            if access_key_id and secret_access_key:
                client_kwargs["aws_access_key_id"] = access_key_id
                client_kwargs["aws_secret_access_key"] = secret_access_key
            client = boto3.client("s3", **client_kwargs)

        self.s3 = client
        logger.info("s3_storage_initialized", bucket=bucket, region=region)

    async def save_png(self, png_bytes: bytes, output_id: str) -> StorageResult:
        """Upload PNG to S3."""
        s3_key = f"{self.prefix}{output_id}.png"
        self.s3.put_object(
            Bucket=self.bucket,
            Key=s3_key,
            Body=png_bytes,
            ContentType="image/png",
        )
        return StorageResult(output_id=output_id, location=f"s3://{self.bucket}/{s3_key}")


class HostDocument(ABC):
    """The document the finished composite is inserted into."""

    @abstractmethod
    async def add_image(self, png_bytes: bytes) -> StorageResult:
        """
        Insert a PNG composite.

        Raises:
            HostIntegrationError: permission denied, payload too large, I/O failure
        """
        pass


class StorageHostDocument(HostDocument):
    """
    Host document backed by a storage provider.

    Usage:
        host = StorageHostDocument(LocalStorageProvider("outputs"))
        result = await host.add_image(png_bytes)
    """

    def __init__(self, provider: StorageProvider, max_bytes: Optional[int] = None):
        self.provider = provider
        self.max_bytes = max_bytes

    async def add_image(self, png_bytes: bytes) -> StorageResult:
        if self.max_bytes is not None and len(png_bytes) > self.max_bytes:
            raise HostIntegrationError(
                "Composite is too large for the host document",
                target=type(self.provider).__name__,
                details={"size_bytes": len(png_bytes), "max_bytes": self.max_bytes},
            )

        output_id = f"{DOWNLOAD_PREFIX}-{uuid.uuid4().hex[:8]}"
        try:
            result = await self.provider.save_png(png_bytes, output_id)
        except HostIntegrationError:
            raise
        except Exception as e:
            raise HostIntegrationError(
                f"Failed to add image to document: {e}",
                target=type(self.provider).__name__,
            ) from e

        logger.info("composite_stored", output_id=result.output_id, location=result.location)
        return result


def _create_host_document() -> StorageHostDocument:
    """
    Factory function that creates the host document based on config.
    Called once at module load to create the singleton.
    """
    from config import settings

    # storage_service.py is at backend/services/, so project root is 3 levels up
    _THIS_DIR = os.path.dirname(os.path.abspath(__file__))
    _PROJECT_ROOT = os.path.dirname(os.path.dirname(_THIS_DIR))
    output_dir = os.path.join(_PROJECT_ROOT, settings.OUTPUTS_DIR)

    if settings.STORAGE_PROVIDER == "s3" and settings.AWS_S3_BUCKET_NAME:
        provider = S3StorageProvider(
            bucket=settings.AWS_S3_BUCKET_NAME,
            region=settings.AWS_REGION,
            access_key_id=settings.AWS_ACCESS_KEY_ID,
            secret_access_key=settings.AWS_SECRET_ACCESS_KEY,
        )
    else:
        if settings.STORAGE_PROVIDER == "s3":
            logger.warning("s3_bucket_missing_falling_back_to_local")
        provider = LocalStorageProvider(output_dir=output_dir)

    return StorageHostDocument(provider=provider)


# Singleton instance (auto-configured from .env / config)
host_document = _create_host_document()
