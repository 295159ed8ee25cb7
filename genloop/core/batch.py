"""
Sequential batch orchestration.

Drives the retry controller over work items in the order supplied. A
failure in one item is recorded on that item and never stops the run.
The orchestrator is the only component that turns exceptions into state.
"""

from datetime import datetime
from typing import Callable, Optional, Sequence

from .events import CancellationToken, EventLevel, EventSink, emit
from .errors import OperationCancelled
from .models import BatchItem, BatchRun, ItemStatus, ProgressEvent, WorkItem
from .request_builder import PipelineOptions, RequestBuilder
from .retry_controller import GenerationRetryController

COMPONENT = "batch"

ProgressCallback = Callable[[ProgressEvent], None]


class BatchOrchestrator:
    """Runs every work item through generation, verification and upload."""

    def __init__(
        self,
        controller: GenerationRetryController,
        builder_factory: Callable[[PipelineOptions], RequestBuilder] = RequestBuilder,
        uploader=None,
        sink: Optional[EventSink] = None,
        cancel_token: Optional[CancellationToken] = None
    ):
        """Initialize the orchestrator.

        Args:
            controller: Retry controller used for every item
            builder_factory: Creates the per-run request builder
            uploader: Optional ArtifactUploader for produced artifacts
            sink: Structured event sink
            cancel_token: Checked at the top of every item
        """
        self.controller = controller
        self._builder_factory = builder_factory
        self._uploader = uploader
        self._sink = sink
        self._cancel_token = cancel_token

    def _cancelled(self) -> bool:
        return self._cancel_token is not None and self._cancel_token.cancelled

    def run_batch(
        self,
        items: Sequence[WorkItem],
        options: PipelineOptions,
        on_progress: Optional[ProgressCallback] = None
    ) -> BatchRun:
        """Process ``items`` one at a time.

        Args:
            items: Work items in processing order
            options: Settings shared by every item
            on_progress: Called after every item with ``(current, total)``

        Returns:
            The completed run ledger
        """
        total = len(items)
        run = BatchRun(
            items=[BatchItem(id=item.id, source_ref=item.source_ref) for item in items],
            started_at=datetime.now(),
            total_count=total
        )
        emit(self._sink, EventLevel.INFO, COMPONENT, f"=== BATCH START: {total} items ===")
        builder = self._builder_factory(options)

        for index, (work, record) in enumerate(zip(items, run.items), start=1):
            if self._cancelled():
                record.finish(ItemStatus.CANCELLED, "Cancelled before start")
            else:
                emit(
                    self._sink, EventLevel.INFO, COMPONENT,
                    f"--- [{index}/{total}]: {work.source_ref} ---",
                    item=work.id
                )
                self._process_item(work, record, builder, options)

            run.completed_count = index
            if on_progress is not None:
                on_progress(ProgressEvent(current=index, total=total))

        run.finished_at = datetime.now()
        counts = run.count_by_status()
        emit(
            self._sink, EventLevel.INFO, COMPONENT,
            f"=== BATCH DONE: {counts[ItemStatus.SUCCESS]} OK / "
            f"{counts[ItemStatus.WARNING]} WARN / {counts[ItemStatus.ERROR]} ERR ==="
        )
        return run

    def _process_item(
        self,
        work: WorkItem,
        record: BatchItem,
        builder: RequestBuilder,
        options: PipelineOptions
    ) -> None:
        record.start()
        try:
            request = builder.build(work)
            outcome = self.controller.run(
                request,
                attempt_budget=options.attempt_budget,
                qc_enabled=options.qc_enabled
            )
            record.attempts = outcome.attempts
            record.final_result = outcome.result
            emit(
                self._sink, EventLevel.DEBUG, COMPONENT,
                f"{work.source_ref}: {outcome.generation_calls} generation call(s), "
                f"{outcome.verification_calls} verification call(s)",
                item=work.id,
                generation_calls=outcome.generation_calls,
                verification_calls=outcome.verification_calls
            )
        except OperationCancelled as e:
            record.finish(ItemStatus.CANCELLED, str(e))
            emit(self._sink, EventLevel.WARNING, COMPONENT, f"{work.source_ref}: cancelled", item=work.id)
            return
        except Exception as e:
            record.finish(ItemStatus.ERROR, str(e) or type(e).__name__)
            emit(
                self._sink, EventLevel.ERROR, COMPONENT,
                f"{work.source_ref}: {record.message}",
                item=work.id
            )
            return

        if outcome.accepted:
            record.finish(ItemStatus.SUCCESS, "OK")
        else:
            record.finish(ItemStatus.WARNING, f"QC Issues: {outcome.last_issues}")
        if self._uploader is not None:
            self._upload(work, record)
        emit(
            self._sink, EventLevel.INFO, COMPONENT,
            f"{work.source_ref} saved ({record.status.value})",
            item=work.id
        )

    def _upload(self, work: WorkItem, record: BatchItem) -> None:
        """Persist the item's artifact. A failed upload keeps the local result."""
        try:
            receipt = self._uploader.upload_artifact(work.id, record.final_result.image)
        except Exception as e:
            record.message = f"{record.message}; Upload failed: {str(e) or type(e).__name__}"
            emit(
                self._sink, EventLevel.WARNING, COMPONENT,
                f"{work.source_ref}: upload failed: {e}",
                item=work.id
            )
            return
        record.artifact_key = receipt.key
