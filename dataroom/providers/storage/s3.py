from __future__ import annotations

import asyncio
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from dataroom.core.errors import StorageUnavailable


class S3ObjectStore:
    def __init__(self, bucket: str, region: str, client: Any | None = None) -> None:
        if not bucket or not region:
            raise ValueError("bucket and region are required")
        self._bucket = bucket
        self._region = region
        self._client = client

    def _get_client(self) -> Any:
        if self._client is not None:
            return self._client
        try:
            import boto3
        except Exception as exc:  # pragma: no cover - environment-specific import
            raise StorageUnavailable("AWS SDK not available. Install boto3.") from exc

        self._client = boto3.client("s3", region_name=self._region)
        return self._client

    async def _presign(self, operation: str, params: dict[str, Any], expires_in: int) -> str:
        client = self._get_client()
        try:
            return await asyncio.to_thread(
                client.generate_presigned_url,
                operation,
                Params={"Bucket": self._bucket, **params},
                ExpiresIn=int(expires_in),
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageUnavailable(f"S3 presign failed for {operation}") from exc

    async def presign_get(
        self,
        key: str,
        *,
        expires_in: int,
        filename: str | None = None,
        as_attachment: bool = False,
    ) -> str:
        params: dict[str, Any] = {"Key": key}
        if as_attachment:
            params["ResponseContentDisposition"] = (
                f'attachment; filename="{filename or key.rsplit("/", 1)[-1]}"'
            )
        return await self._presign("get_object", params, expires_in)

    async def presign_put(
        self,
        key: str,
        *,
        content_type: str,
        expires_in: int,
        metadata: dict[str, str] | None = None,
    ) -> str:
        params: dict[str, Any] = {"Key": key, "ContentType": content_type}
        if metadata:
            params["Metadata"] = metadata
        return await self._presign("put_object", params, expires_in)
