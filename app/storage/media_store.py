"""S3-compatible media storage: presigned write URLs and public read URLs.

The browser uploads source media straight to the bucket with the presigned
PUT URL; the analysis job later reads the object back through its public URL.
"""

import os
import uuid
from dataclasses import dataclass
from typing import Optional

import boto3
import httpx
from botocore.config import Config as BotoConfig

from app.config import Settings
from app.exceptions import MediaStorageError
from app.logger import logger


@dataclass(frozen=True)
class WriteTarget:
    upload_url: str
    object_key: str
    public_url: str
    expires_in: int


class MediaStore:
    """Issues write targets for new media objects and checks media URL origins."""

    def __init__(self, settings: Settings, s3_client=None):
        self._bucket = settings.s3_bucket_name
        self._account_id = settings.r2_account_id
        self._public_base_url = (settings.media_public_base_url or "").rstrip("/")
        self._custom_domain = (settings.media_custom_domain or "").strip("/")
        self._expires_in = settings.upload_url_expires_seconds

        endpoint = settings.s3_endpoint_url
        if not endpoint and self._account_id:
            endpoint = f"https://{self._account_id}.r2.cloudflarestorage.com"

        self._configured = bool(
            settings.s3_access_key_id and settings.s3_secret_access_key and self._bucket and endpoint
        )
        self._s3 = s3_client
        if self._s3 is None and self._configured:
            self._s3 = boto3.client(
                "s3",
                endpoint_url=endpoint,
                aws_access_key_id=settings.s3_access_key_id,
                aws_secret_access_key=settings.s3_secret_access_key,
                region_name=settings.s3_region_name,
                config=BotoConfig(signature_version="s3v4"),
            )
        if self._s3 is None:
            logger.warning("Media storage configuration incomplete; upload URLs are disabled")

    @property
    def configured(self) -> bool:
        return self._s3 is not None

    def create_write_target(self, filename: str, content_type: str) -> WriteTarget:
        """Presign a one-off PUT for a fresh object and derive its public URL."""
        if self._s3 is None:
            raise MediaStorageError("Media storage not configured on server.")

        object_key = build_object_key(filename, content_type)
        try:
            upload_url = self._s3.generate_presigned_url(
                "put_object",
                Params={"Bucket": self._bucket, "Key": object_key, "ContentType": content_type},
                ExpiresIn=self._expires_in,
            )
        except Exception as e:
            logger.error(f"Failed to presign upload URL: {e}", extra={"object_key": object_key})
            raise MediaStorageError(f"Failed to generate upload URL: {e}") from e

        logger.info("Issued upload URL", extra={"object_key": object_key, "content_type": content_type})
        return WriteTarget(
            upload_url=upload_url,
            object_key=object_key,
            public_url=self.public_url_for(object_key),
            expires_in=self._expires_in,
        )

    def public_url_for(self, object_key: str) -> str:
        if self._public_base_url:
            return f"{self._public_base_url}/{object_key}"
        if self._custom_domain:
            return f"https://{self._custom_domain}/{object_key}"
        return f"https://pub-{self._account_id}.r2.dev/{object_key}"

    def is_public_url(self, url: str) -> bool:
        """True when ``url`` is an https URL on this store's public origin."""
        parsed = _parse_url(url)
        if parsed is None or parsed.scheme != "https" or parsed.userinfo:
            return False
        if self._public_base_url:
            base = _parse_url(self._public_base_url)
            return (
                base is not None
                and (parsed.host, parsed.port) == (base.host, base.port)
                and parsed.path.startswith(base.path.rstrip("/") + "/")
            )
        if self._custom_domain:
            return parsed.host == self._custom_domain.lower()
        if not self._account_id:
            return False
        return parsed.host in (
            f"pub-{self._account_id}.r2.dev".lower(),
            f"{self._account_id}.r2.cloudflarestorage.com".lower(),
        )


def _parse_url(url: str) -> Optional[httpx.URL]:
    if not url:
        return None
    try:
        return httpx.URL(url)
    except httpx.InvalidURL:
        return None


def build_object_key(filename: str, content_type: Optional[str] = None) -> str:
    """``videos/<uuid>.<ext>`` for video, ``images/<uuid>.<ext>`` for images."""
    extension = os.path.splitext(filename)[1].lstrip(".").lower() or "bin"
    prefix = "images" if (content_type or "").startswith("image/") else "videos"
    return f"{prefix}/{uuid.uuid4()}.{extension}"
