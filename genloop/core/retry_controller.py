"""
Generate / verify / corrective-retry state machine.

States per work item::

    Attempting(n) -> Verifying(n) -> Accepted
                                  -> Attempting(n + 1)   (verdict failed, budget left)
                                  -> Exhausted           (verdict failed, budget spent)

An exhausted run still returns the last produced result, flagged as not
accepted, so quality never blocks the pipeline.
"""

from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .errors import OperationCancelled
from .events import CancellationToken, EventLevel, EventSink, emit
from .models import GenerationRequest, GenerationResult, RetryAttempt
from .quality_gate import QualityGate

COMPONENT = "retry_controller"

DEFAULT_ATTEMPT_BUDGET = 2

Generator = Callable[[GenerationRequest], GenerationResult]
CorrectionInjector = Callable[[GenerationRequest, str], GenerationRequest]


def append_correction_clause(request: GenerationRequest, issues: str) -> GenerationRequest:
    """Default injector: fold the verifier's issues into the instruction."""
    clause = (
        f"URGENT FIX: The previous result had errors: {issues or 'anatomy error'}. "
        "Correct them completely while keeping everything else the same."
    )
    return request.with_correction(clause)


@dataclass
class ControllerOutcome:
    """Final artifact for one work item and how it was reached."""
    result: GenerationResult
    accepted: bool
    last_issues: str = ""
    attempts: List[RetryAttempt] = field(default_factory=list)

    @property
    def generation_calls(self) -> int:
        return sum(1 for a in self.attempts if a.result is not None)

    @property
    def verification_calls(self) -> int:
        return sum(1 for a in self.attempts if a.verdict is not None)


class GenerationRetryController:
    """Runs bounded generation attempts with optional quality verification."""

    def __init__(
        self,
        generate: Generator,
        gate: Optional[QualityGate] = None,
        inject_correction: CorrectionInjector = append_correction_clause,
        sink: Optional[EventSink] = None,
        cancel_token: Optional[CancellationToken] = None
    ):
        self._generate = generate
        self._gate = gate
        self._inject_correction = inject_correction
        self._sink = sink
        self._cancel_token = cancel_token

    def run(
        self,
        initial_request: GenerationRequest,
        attempt_budget: int = DEFAULT_ATTEMPT_BUDGET,
        qc_enabled: bool = True
    ) -> ControllerOutcome:
        """Produce an artifact for ``initial_request``.

        Args:
            initial_request: Request for attempt 1
            attempt_budget: Maximum generation attempts (>= 1)
            qc_enabled: Verify each result before accepting it

        Returns:
            Outcome with the accepted (or last produced) result

        Raises:
            ValueError: If attempt_budget < 1, or qc_enabled without a gate
            Exception: Whatever attempt 1 raised when it produced no result
        """
        if attempt_budget < 1:
            raise ValueError("attempt_budget must be >= 1")
        if qc_enabled and self._gate is None:
            raise ValueError("qc_enabled requires a quality gate")

        attempts: List[RetryAttempt] = []
        request = initial_request
        last_result: Optional[GenerationResult] = None
        last_issues = ""

        for attempt_number in range(1, attempt_budget + 1):
            if attempt_number > 1:
                if self._cancel_token is not None and self._cancel_token.cancelled:
                    raise OperationCancelled("Cancelled before corrective attempt")
                request = self._inject_correction(initial_request, last_issues)
                emit(
                    self._sink, EventLevel.INFO, COMPONENT,
                    f"Retry #{attempt_number} fixing: {last_issues}",
                    attempt=attempt_number
                )

            attempt = RetryAttempt(attempt_number=attempt_number, request=request)
            attempts.append(attempt)
            try:
                attempt.result = self._generate(request)
            except Exception as e:
                # a corrective attempt never discards an artifact already produced
                if last_result is None or isinstance(e, OperationCancelled):
                    raise
                emit(
                    self._sink, EventLevel.WARNING, COMPONENT,
                    f"Corrective attempt {attempt_number} failed, keeping previous result: {e}",
                    attempt=attempt_number
                )
                return ControllerOutcome(
                    result=last_result,
                    accepted=False,
                    last_issues=last_issues,
                    attempts=attempts
                )
            last_result = attempt.result

            if not qc_enabled:
                return ControllerOutcome(result=last_result, accepted=True, attempts=attempts)

            emit(
                self._sink, EventLevel.INFO, COMPONENT,
                f"QC Check ({attempt_number}/{attempt_budget})...",
                attempt=attempt_number
            )
            attempt.verdict = self._gate.verify(initial_request.subject, last_result.image)
            if attempt.verdict.passed:
                return ControllerOutcome(
                    result=last_result,
                    accepted=True,
                    last_issues=attempt.verdict.issues,
                    attempts=attempts
                )
            last_issues = attempt.verdict.issues

        emit(
            self._sink, EventLevel.WARNING, COMPONENT,
            "Accepting result after retry limit.",
            attempts=attempt_budget
        )
        return ControllerOutcome(
            result=last_result,
            accepted=False,
            last_issues=last_issues,
            attempts=attempts
        )
