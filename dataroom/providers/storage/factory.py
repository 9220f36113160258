from __future__ import annotations

from dataroom.core.config import get_settings
from dataroom.providers.storage.base import ObjectStore
from dataroom.providers.storage.fake import FakeObjectStore
from dataroom.providers.storage.s3 import S3ObjectStore


def get_object_store() -> ObjectStore:
    settings = get_settings()
    provider = (settings.storage_provider or "fake").lower()

    if provider == "fake":
        return FakeObjectStore()
    if provider == "s3":
        return S3ObjectStore(bucket=settings.storage_bucket, region=settings.storage_region)

    raise ValueError(f"Unsupported storage provider: {provider}")
