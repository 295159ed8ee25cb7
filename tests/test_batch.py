"""
Unit tests for batch orchestration.

Tests per-item failure isolation, progress reporting, cancellation and the
optional upload step.
"""

from unittest.mock import Mock

import pytest

from genloop.core.batch import BatchOrchestrator
from genloop.core.errors import ExhaustedRetries, NoArtifactProduced
from genloop.core.events import CancellationToken, CollectingSink
from genloop.core.imaging import passthrough
from genloop.core.models import (
    BatchItem,
    GenerationResult,
    ImageBlob,
    ItemStatus,
    QCVerdict,
    WorkItem,
)
from genloop.core.request_builder import BatchMode, PipelineOptions, RequestBuilder
from genloop.core.retry_controller import GenerationRetryController

OPTIONS = PipelineOptions(
    mode=BatchMode.COMPOSITE,
    background=ImageBlob(b"background"),
    qc_enabled=False,
)


def _items(*names):
    return [WorkItem(id=n, source_ref=f"{n}.jpg", subject=ImageBlob(n.encode())) for n in names]


def _builder(options):
    return RequestBuilder(options, compressor=passthrough)


def _generate_by_subject(failures):
    """Generator that raises for subjects listed in ``failures``."""
    def generate(request):
        name = request.subject.data.decode()
        if name in failures:
            raise failures[name]
        return GenerationResult(image=ImageBlob(b"out-" + request.subject.data))
    return generate


class TestBatchOrchestrator:
    """Test BatchOrchestrator.run_batch."""

    def setup_method(self):
        self.sink = CollectingSink()

    def _orchestrator(self, generate, gate=None, **kwargs):
        controller = GenerationRetryController(generate, gate)
        return BatchOrchestrator(controller, builder_factory=_builder, sink=self.sink, **kwargs)

    def test_failure_is_isolated(self):
        generate = _generate_by_subject({"b": ExhaustedRetries(3, "503", status=503)})
        progress = []

        run = self._orchestrator(generate).run_batch(_items("a", "b", "c"), OPTIONS, progress.append)

        assert [item.status for item in run.items] == [
            ItemStatus.SUCCESS, ItemStatus.ERROR, ItemStatus.SUCCESS
        ]
        assert run.items[1].message == "API: 503 (after 3 tries)"
        assert run.items[2].final_result.image.data == b"out-c"
        assert [(p.current, p.total) for p in progress] == [(1, 3), (2, 3), (3, 3)]
        assert run.is_complete
        assert run.finished_at is not None

    def test_no_artifact_is_error(self):
        generate = _generate_by_subject({"a": NoArtifactProduced("safety block")})

        run = self._orchestrator(generate).run_batch(_items("a"), OPTIONS)

        assert run.items[0].status == ItemStatus.ERROR
        assert run.items[0].message.startswith("No image returned")

    def test_unexpected_exception_is_error(self):
        generate = _generate_by_subject({"a": KeyError("x")})

        run = self._orchestrator(generate).run_batch(_items("a", "b"), OPTIONS)

        assert run.items[0].status == ItemStatus.ERROR
        assert run.items[1].status == ItemStatus.SUCCESS

    def test_quality_warning(self):
        generate = _generate_by_subject({})
        gate = Mock()
        gate.verify.return_value = QCVerdict(passed=False, score=5, issues="plastic skin")
        options = PipelineOptions(background=ImageBlob(b"bg"), attempt_budget=2)

        run = self._orchestrator(generate, gate).run_batch(_items("a"), options)

        item = run.items[0]
        assert item.status == ItemStatus.WARNING
        assert item.message == "QC Issues: plastic skin"
        assert len(item.attempts) == 2
        assert item.final_result is not None

    def test_items_processed_in_order(self):
        seen = []

        def generate(request):
            seen.append(request.subject.data)
            return GenerationResult(image=ImageBlob(b"out"))

        self._orchestrator(generate).run_batch(_items("x", "y", "z"), OPTIONS)

        assert seen == [b"x", b"y", b"z"]

    def test_cancellation_marks_remaining_items(self):
        token = CancellationToken()

        def on_progress(event):
            if event.current == 1:
                token.cancel()

        run = self._orchestrator(_generate_by_subject({}), cancel_token=token).run_batch(
            _items("a", "b", "c"), OPTIONS, on_progress
        )

        assert [item.status for item in run.items] == [
            ItemStatus.SUCCESS, ItemStatus.CANCELLED, ItemStatus.CANCELLED
        ]
        assert run.completed_count == 3
        assert run.count_by_status()[ItemStatus.CANCELLED] == 2

    def test_upload_sets_artifact_key(self):
        uploader = Mock()
        uploader.upload_artifact.return_value = Mock(key="batch/a_batch.jpg")

        run = self._orchestrator(_generate_by_subject({}), uploader=uploader).run_batch(_items("a"), OPTIONS)

        uploader.upload_artifact.assert_called_once()
        name, image = uploader.upload_artifact.call_args[0]
        assert name == "a"
        assert image.data == b"out-a"
        assert run.items[0].artifact_key == "batch/a_batch.jpg"
        assert run.items[0].status == ItemStatus.SUCCESS

    def test_upload_failure_keeps_result(self):
        uploader = Mock()
        uploader.upload_artifact.side_effect = [RuntimeError("store down"), Mock(key="batch/b_batch.jpg")]

        run = self._orchestrator(_generate_by_subject({}), uploader=uploader).run_batch(_items("a", "b"), OPTIONS)

        first, second = run.items
        assert first.status == ItemStatus.SUCCESS
        assert first.final_result.image.data == b"out-a"
        assert first.artifact_key is None
        assert first.message == "OK; Upload failed: store down"
        assert second.status == ItemStatus.SUCCESS
        assert second.artifact_key == "batch/b_batch.jpg"
        assert any("upload failed" in m for m in self.sink.messages())

    def test_upload_failure_keeps_warning_status(self):
        uploader = Mock()
        uploader.upload_artifact.side_effect = RuntimeError("quota listing failed")
        gate = Mock()
        gate.verify.return_value = QCVerdict(passed=False, score=5, issues="plastic skin")
        options = PipelineOptions(background=ImageBlob(b"bg"), attempt_budget=1)

        run = self._orchestrator(_generate_by_subject({}), gate, uploader=uploader).run_batch(_items("a"), options)

        item = run.items[0]
        assert item.status == ItemStatus.WARNING
        assert item.message.startswith("QC Issues: plastic skin")
        assert item.final_result is not None

    def test_empty_batch(self):
        run = self._orchestrator(_generate_by_subject({})).run_batch([], OPTIONS)

        assert run.items == []
        assert run.is_complete


class TestBatchItem:
    """Test BatchItem lifecycle rules."""

    def test_finish_requires_terminal_status(self):
        item = BatchItem(id="a", source_ref="a.jpg")
        with pytest.raises(ValueError, match="not a terminal status"):
            item.finish(ItemStatus.RUNNING)

    def test_terminal_is_final(self):
        item = BatchItem(id="a", source_ref="a.jpg")
        item.start()
        item.finish(ItemStatus.SUCCESS, "OK")
        with pytest.raises(ValueError, match="already finished"):
            item.finish(ItemStatus.ERROR, "late")
        assert item.status == ItemStatus.SUCCESS

    def test_start_only_from_pending(self):
        item = BatchItem(id="a", source_ref="a.jpg")
        item.start()
        with pytest.raises(ValueError, match="cannot start"):
            item.start()
