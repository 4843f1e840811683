"""Storage for uploaded images (organization logos): local disk or S3."""

from __future__ import annotations

import asyncio
import base64
import binascii
import re
import uuid
from pathlib import Path

import boto3
import structlog
from botocore.client import BaseClient
from botocore.exceptions import BotoCoreError, ClientError

from app.core.config import Settings
from app.core.errors import StorageError, ValidationError
from credhub_shared.schemas.organizations import LOGO_DATA_URI_PATTERN

log = structlog.get_logger()

_DATA_URI = re.compile(LOGO_DATA_URI_PATTERN)


def parse_image_data_uri(data_uri: str) -> tuple[str, bytes]:
    """Return (extension, raw bytes) for a base64 image data URI."""
    match = _DATA_URI.match(data_uri)
    if not match:
        raise ValidationError("Invalid image format")
    extension = match.group(1).lower() or "png"
    try:
        raw = base64.b64decode(match.group(2), validate=True)
    except binascii.Error:
        raise ValidationError("Invalid image encoding")
    if not raw:
        raise ValidationError("Empty image")
    return extension, raw


class ImageStorage:
    def __init__(self, settings: Settings, s3_client: BaseClient | None = None):
        self._settings = settings
        self._s3_client = s3_client

    def _s3(self) -> BaseClient:
        if self._s3_client is None:
            self._s3_client = boto3.client(
                "s3",
                region_name=self._settings.s3_region or None,
                endpoint_url=self._settings.s3_endpoint_url or None,
            )
        return self._s3_client

    def _s3_public_url(self, key: str) -> str:
        if self._settings.s3_endpoint_url:
            return f"{self._settings.s3_endpoint_url.rstrip('/')}/{self._settings.s3_bucket}/{key}"
        return f"https://{self._settings.s3_bucket}.s3.{self._settings.s3_region}.amazonaws.com/{key}"

    async def store_data_uri(self, data_uri: str, prefix: str) -> str:
        """Persist a base64 data URI and return its public URL."""
        extension, raw = parse_image_data_uri(data_uri)
        key = f"{prefix}/{uuid.uuid4().hex}.{extension}"

        if self._settings.storage_backend == "s3":
            try:
                await asyncio.to_thread(
                    self._s3().put_object,
                    Bucket=self._settings.s3_bucket,
                    Key=key,
                    Body=raw,
                    ContentType=f"image/{extension}",
                )
            except (BotoCoreError, ClientError) as exc:
                log.error("storage.s3_upload_failed", key=key, error=str(exc))
                raise StorageError("Unable to store image")
            url = self._s3_public_url(key)
        else:
            path = Path(self._settings.local_storage_path) / key
            try:
                await asyncio.to_thread(_write_file, path, raw)
            except OSError as exc:
                log.error("storage.local_write_failed", path=str(path), error=str(exc))
                raise StorageError("Unable to store image")
            url = f"{self._settings.public_asset_base_url.rstrip('/')}/{key}"

        log.info("storage.image_stored", key=key, backend=self._settings.storage_backend)
        return url


def _write_file(path: Path, raw: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(raw)
