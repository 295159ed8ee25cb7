"""
Storage quota enforcement for the shared artifact store.

Before each upload the manager checks usage against a hard limit and, when
it is reached, evicts the oldest unprotected objects until usage drops to a
target watermark. Enforcement is best-effort: an upload is never blocked.

Decisions are made against a fresh listing of the store. Concurrent writers
may change usage between the listing and the deletes.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Sequence, Tuple

from genloop.storage.models import StorageObject

from .events import EventLevel, EventSink, emit

COMPONENT = "storage_quota"

MB = 1024 * 1024
DEFAULT_HARD_LIMIT_BYTES = 900 * MB
DEFAULT_TARGET_FRACTION = 0.8
DEFAULT_PROTECTED_PREFIXES = ("_templates/",)


class EvictableStore(Protocol):
    def list_objects(self) -> List[StorageObject]:
        ...

    def delete_objects(self, keys: Sequence[str]) -> None:
        ...


@dataclass(frozen=True)
class StorageUsage:
    total_bytes: int
    object_count: int

    @property
    def total_mb(self) -> float:
        return self.total_bytes / MB


@dataclass
class EvictionReport:
    """What one ``before_upload`` pass did."""
    usage_before: StorageUsage
    usage_after: StorageUsage
    candidate_size_bytes: int = 0
    evicted_keys: List[str] = field(default_factory=list)
    over_limit: bool = False

    @property
    def bytes_freed(self) -> int:
        return self.usage_before.total_bytes - self.usage_after.total_bytes

    @property
    def evicted(self) -> bool:
        return bool(self.evicted_keys)


def _usage_of(objects: Sequence[StorageObject]) -> StorageUsage:
    return StorageUsage(
        total_bytes=sum(o.size_bytes for o in objects),
        object_count=len(objects)
    )


class StorageQuotaManager:
    """Keeps a shared object store within a size budget by evicting oldest-first."""

    def __init__(
        self,
        store: EvictableStore,
        hard_limit_bytes: int = DEFAULT_HARD_LIMIT_BYTES,
        target_fraction: float = DEFAULT_TARGET_FRACTION,
        protected_prefixes: Tuple[str, ...] = DEFAULT_PROTECTED_PREFIXES,
        sink: Optional[EventSink] = None
    ):
        """Initialize the manager.

        Args:
            store: Object store to list and delete from
            hard_limit_bytes: Usage at or above which eviction starts
            target_fraction: Watermark as a fraction of the hard limit
            protected_prefixes: Key prefixes that are never evicted
            sink: Structured event sink

        Raises:
            ValueError: If the limit or fraction is out of range
        """
        if hard_limit_bytes <= 0:
            raise ValueError("hard_limit_bytes must be > 0")
        if not 0 < target_fraction <= 1:
            raise ValueError("target_fraction must be in (0, 1]")
        self.store = store
        self.hard_limit_bytes = hard_limit_bytes
        self.target_fraction = target_fraction
        self.protected_prefixes = tuple(protected_prefixes)
        self._sink = sink

    @property
    def target_bytes(self) -> int:
        return int(self.hard_limit_bytes * self.target_fraction)

    def is_protected(self, key: str) -> bool:
        return any(key.startswith(prefix) for prefix in self.protected_prefixes)

    def usage(self) -> StorageUsage:
        return _usage_of(self.store.list_objects())

    def before_upload(self, candidate_size_bytes: int = 0) -> EvictionReport:
        """Run one eviction pass ahead of an upload.

        Args:
            candidate_size_bytes: Size of the object about to be written

        Returns:
            Report of the usage before and after and the evicted keys
        """
        objects = self.store.list_objects()
        before = _usage_of(objects)
        limit_mb = self.hard_limit_bytes / MB

        if before.total_bytes < self.hard_limit_bytes:
            emit(
                self._sink, EventLevel.DEBUG, COMPONENT,
                f"Storage: {before.total_mb:.1f}MB / {limit_mb:.0f}MB - OK"
            )
            return EvictionReport(
                usage_before=before,
                usage_after=before,
                candidate_size_bytes=candidate_size_bytes
            )

        emit(
            self._sink, EventLevel.WARNING, COMPONENT,
            f"Storage {before.total_mb:.1f}MB >= {limit_mb:.0f}MB - Cleaning...",
            total_bytes=before.total_bytes,
            candidate_size_bytes=candidate_size_bytes
        )

        candidates = sorted(
            (o for o in objects if not self.is_protected(o.key)),
            key=lambda o: (o.created_at, o.key)
        )
        current = before.total_bytes
        count = before.object_count
        evicted: List[str] = []
        for obj in candidates:
            if current <= self.target_bytes:
                break
            self.store.delete_objects([obj.key])
            evicted.append(obj.key)
            current -= obj.size_bytes
            count -= 1

        after = StorageUsage(total_bytes=current, object_count=count)
        over_limit = current >= self.hard_limit_bytes
        if evicted:
            emit(
                self._sink, EventLevel.INFO, COMPONENT,
                f"Deleted {len(evicted)} old objects. Now ~{after.total_mb:.1f}MB",
                evicted=len(evicted)
            )
        if over_limit:
            emit(
                self._sink, EventLevel.WARNING, COMPONENT,
                f"Storage still {after.total_mb:.1f}MB after eviction; uploading anyway",
                total_bytes=current
            )
        return EvictionReport(
            usage_before=before,
            usage_after=after,
            candidate_size_bytes=candidate_size_bytes,
            evicted_keys=evicted,
            over_limit=over_limit
        )
