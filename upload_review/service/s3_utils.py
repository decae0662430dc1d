import asyncio
import time
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


def create_s3_client(region: str, endpoint_url: Optional[str] = None):
    return boto3.client(
        "s3",
        region_name=region,
        endpoint_url=endpoint_url,
        config=Config(signature_version="s3v4"),
    )


def build_backup_key(file_name: str, timestamp: int) -> str:
    """Backup keys follow ``backup/<unix-timestamp>/<original-file-name>``."""
    return f"backup/{timestamp}/{file_name}"


class S3Storage:
    """
    Published-content store. Keys passed in are relative to ``prefix``.
    boto3 is blocking, so every call runs in a worker thread.
    """

    def __init__(self, client, bucket: str, prefix: str = "", clock=time.time):
        self._client = client
        self.bucket = bucket
        self.prefix = prefix
        self._clock = clock

    def full_key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def head(self, key: str) -> Optional[dict]:
        """
        Get object metadata, or None when nothing is stored at ``key``
        """
        try:
            response = await asyncio.to_thread(
                self._client.head_object,
                Bucket=self.bucket,
                Key=self.full_key(key),
            )
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in NOT_FOUND_CODES:
                return None
            raise

        return {
            "size": response.get("ContentLength", 0),
            "content_type": response.get("ContentType", ""),
            "etag": response.get("ETag", ""),
            "last_modified": response.get("LastModified"),
            "version_id": response.get("VersionId"),
        }

    async def exists(self, key: str) -> bool:
        return await self.head(key) is not None

    async def copy(self, source_key: str, dest_key: str) -> None:
        await asyncio.to_thread(
            self._client.copy_object,
            CopySource={"Bucket": self.bucket, "Key": self.full_key(source_key)},
            Bucket=self.bucket,
            Key=self.full_key(dest_key),
        )

    async def backup_file(self, file_name: str) -> str:
        """
        Copy the object at ``file_name`` aside and return the backup key
        """
        backup_key = build_backup_key(file_name, int(self._clock()))
        await self.copy(file_name, backup_key)
        return backup_key

    async def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> None:
        await asyncio.to_thread(
            self._client.put_object,
            Bucket=self.bucket,
            Key=self.full_key(key),
            Body=data,
            ContentType=content_type or "application/octet-stream",
        )

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(
            self._client.delete_object,
            Bucket=self.bucket,
            Key=self.full_key(key),
        )
