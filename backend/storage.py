import logging
import re
import time
from pathlib import Path
from typing import Optional

from backend.config import LOCAL_STORAGE_DIR, S3_BUCKET, S3_ENDPOINT, STORAGE

log = logging.getLogger(__name__)


class StorageError(Exception):
    pass


def generate_pdf_key(user_id: str, file_name: str) -> str:
    safe_name = re.sub(r"[^A-Za-z0-9._-]+", "_", Path(file_name).name).strip("._") or "document.pdf"
    return f"drafts/{user_id}/{int(time.time() * 1000)}-{safe_name}"


class S3Storage:
    def __init__(self, bucket: str, endpoint_url: Optional[str] = None, client=None):
        if not bucket:
            raise StorageError("S3_BUCKET is required for STORAGE='s3'")
        self.bucket = bucket
        if client is None:
            import boto3

            client = boto3.client("s3", endpoint_url=endpoint_url)
        self._client = client

    def get_bytes(self, key: str) -> bytes:
        try:
            resp = self._client.get_object(Bucket=self.bucket, Key=key)
            body = resp["Body"].read()
        except Exception as exc:
            raise StorageError(f"Failed to fetch {key}: {exc}") from exc
        if not body:
            raise StorageError(f"Empty object for {key}")
        return body

    def put_bytes(self, key: str, data: bytes, content_type: str = "application/pdf") -> None:
        try:
            self._client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                ContentDisposition="inline",
            )
        except Exception as exc:
            raise StorageError(f"Failed to upload {key}: {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            self._client.delete_object(Bucket=self.bucket, Key=key)
        except Exception as exc:
            raise StorageError(f"Failed to delete {key}: {exc}") from exc


class LocalStorage:
    def __init__(self, root: Path):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise StorageError(f"Key escapes storage root: {key}")
        return path

    def get_bytes(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return path.read_bytes()
        except OSError as exc:
            raise StorageError(f"Failed to fetch {key}: {exc}") from exc

    def put_bytes(self, key: str, data: bytes, content_type: str = "application/pdf") -> None:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as exc:
            raise StorageError(f"Failed to upload {key}: {exc}") from exc

    def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise StorageError(f"Failed to delete {key}: {exc}") from exc


def create_storage():
    if STORAGE == "s3":
        log.info("Using S3 storage (bucket=%s)", S3_BUCKET)
        return S3Storage(S3_BUCKET, endpoint_url=S3_ENDPOINT)
    log.info("Using local storage at %s", LOCAL_STORAGE_DIR)
    return LocalStorage(LOCAL_STORAGE_DIR)
