"""Audio artifact storage backends (local filesystem or S3)."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Any, Optional

from config import require_s3_settings, settings, storage_backend

logger = logging.getLogger(__name__)

AUDIO_CONTENT_TYPE = "audio/mpeg"
S3_KEY_PREFIX = "audio"


class AudioStorageError(Exception):
    """Raised when the audio artifact could not be persisted."""


def _safe_filename(name: str) -> str:
    base = os.path.basename(name or "audio.mp3")
    cleaned = "".join(ch if ch.isalnum() or ch in {"-", "_", "."} else "_" for ch in base)
    return cleaned or "audio.mp3"


class AudioStorage:
    """Persist audio bytes under a file name and return a resolvable URL."""

    def save(self, audio_bytes: bytes, file_name: str) -> str:
        raise NotImplementedError

    def storage_key(self, file_name: str) -> str:
        return _safe_filename(file_name)

    async def save_async(self, audio_bytes: bytes, file_name: str) -> str:
        return await asyncio.to_thread(self.save, audio_bytes, file_name)


class LocalAudioStorage(AudioStorage):
    """Development backend: write under a served directory, return a relative URL."""

    def __init__(self, directory: Optional[str] = None, url_prefix: Optional[str] = None):
        self.directory = Path(directory or settings.LOCAL_AUDIO_DIR)
        self.url_prefix = (url_prefix or settings.LOCAL_AUDIO_URL_PREFIX).rstrip("/")

    def save(self, audio_bytes: bytes, file_name: str) -> str:
        name = self.storage_key(file_name)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            (self.directory / name).write_bytes(audio_bytes)
        except OSError as exc:
            raise AudioStorageError(f"Failed to save audio file locally: {exc}") from exc
        logger.info("Saved %s bytes of audio to %s", len(audio_bytes), self.directory / name)
        return f"{self.url_prefix}/{name}"


class S3AudioStorage(AudioStorage):
    """Production backend: upload to an S3 bucket, return the public object URL."""

    def __init__(
        self,
        bucket: str,
        region: str = "us-east-1",
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        client: Any = None,
    ):
        self.bucket = bucket
        self.region = region
        if client is None:
            import boto3

            client = boto3.client(
                "s3",
                region_name=region,
                aws_access_key_id=access_key_id,
                aws_secret_access_key=secret_access_key,
            )
        self.s3_client = client

    def storage_key(self, file_name: str) -> str:
        return f"{S3_KEY_PREFIX}/{_safe_filename(file_name)}"

    def public_url(self, key: str) -> str:
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    def save(self, audio_bytes: bytes, file_name: str) -> str:
        key = self.storage_key(file_name)
        try:
            self.s3_client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=audio_bytes,
                ContentType=AUDIO_CONTENT_TYPE,
            )
        except Exception as exc:
            raise AudioStorageError(f"S3 upload failed for {key}: {exc}") from exc
        url = self.public_url(key)
        logger.info("Uploaded audio to %s", url)
        return url


def build_audio_storage() -> AudioStorage:
    """Select the storage backend from configuration."""
    if storage_backend() == "s3":
        s3 = require_s3_settings()
        return S3AudioStorage(
            bucket=s3["bucket"],
            region=s3["region"],
            access_key_id=s3["access_key_id"],
            secret_access_key=s3["secret_access_key"],
        )
    return LocalAudioStorage()
