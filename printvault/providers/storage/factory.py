from __future__ import annotations

from functools import lru_cache

from printvault.core.config import get_settings
from printvault.core.errors import ProviderConfigError
from printvault.providers.storage.base import ObjectStore
from printvault.providers.storage.local import LocalObjectStore
from printvault.providers.storage.s3 import S3ObjectStore


@lru_cache
def get_object_store() -> ObjectStore:
    settings = get_settings()
    backend = (settings.object_store_backend or "local").lower()

    if backend == "local":
        return LocalObjectStore(settings.object_store_local_dir)
    if backend == "s3":
        return S3ObjectStore(
            settings.s3_bucket,
            settings.s3_region,
            endpoint_url=settings.s3_endpoint_url,
        )

    raise ProviderConfigError(f"Unsupported object store backend: {backend}")
