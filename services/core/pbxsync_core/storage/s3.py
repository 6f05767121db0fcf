"""S3-compatible storage backend (AWS S3, DigitalOcean Spaces, R2, MinIO)."""

from typing import Any, Iterator, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from pbxsync_core.domain.errors import StorageError
from pbxsync_core.storage.base import StorageBackend, StoredObject


class S3StorageBackend(StorageBackend):
    """Blob storage in a single S3 bucket."""

    name = "s3"

    def __init__(
        self,
        bucket: str,
        endpoint_url: Optional[str] = None,
        region: Optional[str] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        client: Any = None,
    ):
        if not bucket:
            raise StorageError("S3 bucket is not configured", backend=self.name)
        self.bucket = bucket
        self._client = client or boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            region_name=region,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
        )

    def signed_url(self, path: str, ttl_seconds: int) -> str:
        try:
            return self._client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": path},
                ExpiresIn=ttl_seconds,
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Presign failed: {e}", backend=self.name, path=path)

    def download(self, path: str) -> bytes:
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=path)
            return response["Body"].read()
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Download failed: {e}", backend=self.name, path=path)

    def upload(self, path: str, data: bytes, content_type: str) -> None:
        try:
            self._client.put_object(
                Bucket=self.bucket, Key=path, Body=data, ContentType=content_type
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Upload failed: {e}", backend=self.name, path=path)

    def delete(self, path: str) -> None:
        try:
            self._client.delete_object(Bucket=self.bucket, Key=path)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Delete failed: {e}", backend=self.name, path=path)

    def exists(self, path: str) -> bool:
        try:
            self._client.head_object(Bucket=self.bucket, Key=path)
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise StorageError(f"Head failed: {e}", backend=self.name, path=path)
        except BotoCoreError as e:
            raise StorageError(f"Head failed: {e}", backend=self.name, path=path)

    def list_objects(self, prefix: str) -> Iterator[StoredObject]:
        paginator = self._client.get_paginator("list_objects_v2")
        try:
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for item in page.get("Contents", []):
                    yield StoredObject(path=item["Key"], size=int(item.get("Size") or 0))
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"List failed: {e}", backend=self.name, path=prefix)
