"""Result storage: S3/MinIO when configured, local static directory otherwise.

S3 failures fall back to the local directory so a saved design is never lost.
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional, Tuple

import aiofiles
import boto3

from . import config
from .errors import InvalidRequest

logger = logging.getLogger(__name__)


class ResultStorage:
    def __init__(
        self,
        mode: Optional[str] = None,
        *,
        storage_dir: Optional[Path] = None,
        public_base_url: Optional[str] = None,
        bucket: Optional[str] = None,
        s3_client=None,
    ):
        self.mode = (mode or config.STORAGE_MODE).lower()
        self.storage_dir = Path(storage_dir or config.STORAGE_DIR)
        self.public_base_url = (public_base_url or config.PUBLIC_BASE_URL).rstrip("/")
        self.bucket = bucket or config.S3_BUCKET_OUTPUTS
        self._s3 = s3_client
        if self.mode == "s3" and self._s3 is None:
            self._s3 = boto3.client(
                "s3",
                endpoint_url=config.S3_ENDPOINT,
                aws_access_key_id=config.S3_ACCESS_KEY,
                aws_secret_access_key=config.S3_SECRET_KEY,
                region_name="us-east-1",
            )

    async def _save_local(self, key: str, data: bytes) -> str:
        rel_path = f"{self.bucket}/{key}"
        root = self.storage_dir.resolve()
        file_path = (root / rel_path).resolve()
        if not file_path.is_relative_to(root):
            raise InvalidRequest(f"Storage key escapes the storage directory: {key}")
        file_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(file_path, "wb") as f:
            await f.write(data)
        return f"{self.public_base_url}/static/{rel_path}"

    async def save(self, key: str, data: bytes, content_type: str = "image/png") -> Tuple[str, str]:
        """Store bytes under key. Returns (public_url, mode_used)."""
        if self.mode != "s3":
            return await self._save_local(key, data), "local"
        try:
            await asyncio.to_thread(
                self._s3.put_object, Bucket=self.bucket, Key=key, Body=data, ContentType=content_type
            )
            endpoint = config.S3_ENDPOINT.rstrip("/")
            return f"{endpoint}/{self.bucket}/{key}", "s3"
        except Exception as e:
            logger.error(f"S3 upload failed for {self.bucket}/{key}: {e}. Falling back to local storage.")
            return await self._save_local(key, data), "local"
