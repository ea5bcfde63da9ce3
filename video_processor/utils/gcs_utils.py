from __future__ import annotations

import asyncio
import json
import logging
import mimetypes
import os
import shutil
from pathlib import Path
from typing import Protocol

from google.cloud import storage
from google.oauth2 import service_account

from video_processor.errors import DeliveryError

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    ".mp4": "video/mp4",
    ".webm": "video/webm",
}


def _get_storage_client() -> storage.Client:
    credentials_raw: str = os.getenv("GCP_CREDENTIALS", "")
    if not credentials_raw:
        return storage.Client()
    credentials_info = json.loads(credentials_raw)
    credentials = service_account.Credentials.from_service_account_info(
        credentials_info
    )
    return storage.Client(
        credentials=credentials, project=credentials_info.get("project_id")
    )


def content_type_for(path: Path) -> str:
    suffix = path.suffix.lower()
    if suffix in CONTENT_TYPES:
        return CONTENT_TYPES[suffix]
    guessed, _ = mimetypes.guess_type(path.name)
    return guessed or "application/octet-stream"


def export_key(prefix: str, job_id: str, output_format: str) -> str:
    return f"{prefix.strip('/')}/{job_id}/video.{output_format}"


class Uploader(Protocol):
    async def upload(self, job_id: str, path: Path, output_format: str) -> str: ...


def upload_render_output(bucket_name: str, path: Path, key: str) -> str:
    """Upload a rendered file and return its public URL. Blocking."""
    if not path.exists():
        raise DeliveryError(f"Render output not found: {path}")
    try:
        bucket = _get_storage_client().bucket(bucket_name)
        blob = bucket.blob(key)
        blob.upload_from_filename(str(path), content_type=content_type_for(path))
    except Exception as exc:
        raise DeliveryError(
            f"Failed to upload render output to gs://{bucket_name}/{key}: {exc}"
        ) from exc
    return blob.public_url


class GcsUploader:
    def __init__(self, bucket_name: str, prefix: str = "exports"):
        self.bucket_name = bucket_name
        self.prefix = prefix

    async def upload(self, job_id: str, path: Path, output_format: str) -> str:
        key = export_key(self.prefix, job_id, output_format)
        logger.info("[%s] Uploading to gs://%s/%s", job_id, self.bucket_name, key)
        return await asyncio.to_thread(upload_render_output, self.bucket_name, path, key)


class LocalUploader:
    """Copies outputs into a local directory. Used when no bucket is configured."""

    def __init__(self, output_dir: Path, prefix: str = "exports"):
        self.output_dir = Path(output_dir)
        self.prefix = prefix

    async def upload(self, job_id: str, path: Path, output_format: str) -> str:
        destination = self.output_dir / export_key(self.prefix, job_id, output_format)
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(shutil.copyfile, path, destination)
        except OSError as exc:
            raise DeliveryError(f"Failed to store render output: {exc}") from exc
        logger.info("[%s] Skipping GCS upload; output stored at %s", job_id, destination)
        return destination.resolve().as_uri()


def parse_gcs_uri(uri: str) -> tuple[str, str]:
    if not uri.startswith("gs://"):
        raise ValueError(f"Invalid GCS path: {uri}")
    bucket_name, _, blob_path = uri[5:].partition("/")
    if not bucket_name or not blob_path:
        raise ValueError(f"Invalid GCS path: {uri}")
    return bucket_name, blob_path


def download_text(uri: str) -> str:
    bucket_name, blob_path = parse_gcs_uri(uri)
    blob = _get_storage_client().bucket(bucket_name).blob(blob_path)
    return blob.download_as_text()
