"""
Data model for the generate-verify-retry pipeline.

Requests and results are immutable values. BatchItem and BatchRun are the
audit record of one batch invocation and are only mutated by the
orchestrator and the retry controller.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple


@dataclass(frozen=True)
class ImageBlob:
    """Opaque image handle: raw bytes plus their mime type."""
    data: bytes
    mime_type: str = "image/jpeg"

    @property
    def size_bytes(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class LabeledImage:
    """Auxiliary image (background, style reference).

    ``label`` is sent as a text part before the image; an empty label sends
    the image alone, continuing the previous labelled group.
    """
    label: str
    image: ImageBlob


@dataclass(frozen=True)
class GenerationRequest:
    """One generation attempt's input.

    Constructed fresh per attempt. A corrective attempt is the original
    request with a correction clause appended to the instruction.
    """
    subject: ImageBlob
    instruction: str
    auxiliary: Tuple[LabeledImage, ...] = ()
    subject_label: str = "SUBJECT:"
    aspect_ratio: str = "1:1"
    image_size: str = "4K"

    def with_correction(self, clause: str) -> "GenerationRequest":
        """Return a copy whose instruction ends with ``clause``."""
        if not clause:
            return self
        return replace(self, instruction=f"{self.instruction} {clause}".strip())


@dataclass(frozen=True)
class GenerationResult:
    """Output of one successful generation call."""
    image: ImageBlob
    remark: Optional[str] = None

    @property
    def mime_type(self) -> str:
        return self.image.mime_type


@dataclass(frozen=True)
class QCVerdict:
    """Quality gate judgment for one attempt."""
    passed: bool
    score: float
    issues: str


@dataclass
class RetryAttempt:
    """Diagnostic record of one generation attempt for a work item."""
    attempt_number: int
    request: GenerationRequest
    result: Optional[GenerationResult] = None
    verdict: Optional[QCVerdict] = None


class ItemStatus(Enum):
    """Lifecycle of a batch item. The last four are terminal."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (ItemStatus.PENDING, ItemStatus.RUNNING)


@dataclass(frozen=True)
class WorkItem:
    """One unit of batch input: a subject image and where it came from."""
    id: str
    source_ref: str
    subject: ImageBlob


@dataclass
class BatchItem:
    """Permanent audit record for one work item within a run."""
    id: str
    source_ref: str
    status: ItemStatus = ItemStatus.PENDING
    attempts: List[RetryAttempt] = field(default_factory=list)
    final_result: Optional[GenerationResult] = None
    message: str = ""
    artifact_key: Optional[str] = None

    def start(self) -> None:
        if self.status != ItemStatus.PENDING:
            raise ValueError(f"Item {self.id} cannot start from {self.status.value}")
        self.status = ItemStatus.RUNNING

    def finish(self, status: ItemStatus, message: str = "") -> None:
        """Move the item to a terminal status.

        Raises:
            ValueError: If ``status`` is not terminal or the item already finished
        """
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal status")
        if self.status.is_terminal:
            raise ValueError(
                f"Item {self.id} already finished as {self.status.value}"
            )
        self.status = status
        self.message = message


@dataclass
class BatchRun:
    """Ledger of one orchestrator invocation."""
    items: List[BatchItem]
    started_at: datetime
    total_count: int
    completed_count: int = 0
    finished_at: Optional[datetime] = None

    @property
    def is_complete(self) -> bool:
        return self.completed_count == self.total_count

    def count_by_status(self) -> Dict[ItemStatus, int]:
        """Count items per status by scanning the ledger."""
        counts = {status: 0 for status in ItemStatus}
        for item in self.items:
            counts[item.status] += 1
        return counts


@dataclass(frozen=True)
class ProgressEvent:
    """Emitted after each item reaches a terminal status."""
    current: int
    total: int
