"""
Artifact upload path.

Every write consults the quota manager first, then upserts the artifact.
Quota enforcement never blocks the write.
"""

from dataclasses import dataclass
from typing import Optional

from genloop.core.events import EventLevel, EventSink, emit
from genloop.core.models import ImageBlob
from genloop.core.quota import EvictionReport, StorageQuotaManager

from .object_store import SupabaseObjectStore

COMPONENT = "uploader"

_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
}


def extension_for(mime_type: str) -> str:
    return _EXTENSIONS.get(mime_type, "bin")


@dataclass(frozen=True)
class UploadReceipt:
    key: str
    size_bytes: int
    public_url: str
    eviction: EvictionReport


class ArtifactUploader:
    """Persists generated artifacts to the shared store within quota."""

    def __init__(
        self,
        store: SupabaseObjectStore,
        quota: StorageQuotaManager,
        sink: Optional[EventSink] = None,
        key_prefix: str = ""
    ):
        self.store = store
        self.quota = quota
        self._sink = sink
        self.key_prefix = key_prefix

    def key_for(self, name: str, mime_type: str) -> str:
        return f"{self.key_prefix}{name}_batch.{extension_for(mime_type)}"

    def upload(self, key: str, image: ImageBlob) -> UploadReceipt:
        """Run the quota check, then write ``image`` under ``key``."""
        report = self.quota.before_upload(image.size_bytes)
        self.store.upload(key, image.data, image.mime_type)
        emit(
            self._sink, EventLevel.INFO, COMPONENT,
            f"Uploaded: {key} ({image.size_bytes / 1024:.0f}KB)",
            key=key,
            size_bytes=image.size_bytes
        )
        return UploadReceipt(
            key=key,
            size_bytes=image.size_bytes,
            public_url=self.store.public_url(key),
            eviction=report
        )

    def upload_artifact(self, name: str, image: ImageBlob) -> UploadReceipt:
        """Upload a generated artifact under a key derived from ``name``."""
        return self.upload(self.key_for(name, image.mime_type), image)
