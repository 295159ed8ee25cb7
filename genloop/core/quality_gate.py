"""
Quality gate for generated images.

Compares a reference image with a generated one through an external
verifier model. Verification is advisory: when the verifier is unavailable
or its answer cannot be read, the gate passes the result (fails open).
"""

import json
import re
from typing import Any, Dict, List, Optional, Protocol

from .events import EventLevel, EventSink, emit
from .imaging import QC_MAX_DIM, QC_QUALITY, Compressor, compress
from .models import ImageBlob, QCVerdict

COMPONENT = "quality_gate"

DEFAULT_PASS_THRESHOLD = 8

VERIFY_INSTRUCTION = (
    "Compare RESULT vs ORIGINAL. Check: 1) Eye symmetry & pupils "
    "2) Nose/mouth shape 3) Skin texture (real vs plastic) 4) Identity match "
    "5) Limbs/hands if visible. Score 1-10. JSON only:\n"
    '{"anatomy_score":number,"identity_score":number,"pass":boolean,'
    '"issue":"brief description"}\n'
    "Pass = BOTH scores >= {threshold}."
)

_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)
_SCORE_KEYS = ("score", "overall")


class Verifier(Protocol):
    api_key: Optional[str]

    def verify_images(
        self,
        reference: ImageBlob,
        candidate: ImageBlob,
        instruction: str,
        api_key: Optional[str] = None
    ) -> str:
        ...


def extract_json(text: str) -> Optional[Dict[str, Any]]:
    """Parse the first ``{...}`` object embedded in free text.

    Code fences and surrounding prose are ignored. Returns None when no
    object can be decoded.
    """
    if not text:
        return None
    cleaned = _FENCE_RE.sub("", text)
    decoder = json.JSONDecoder()
    start = cleaned.find("{")
    while start != -1:
        try:
            value, _ = decoder.raw_decode(cleaned, start)
        except json.JSONDecodeError:
            start = cleaned.find("{", start + 1)
            continue
        if isinstance(value, dict):
            return value
        start = cleaned.find("{", start + 1)
    return None


def _sub_scores(payload: Dict[str, Any]) -> List[float]:
    scores = []
    for key, value in payload.items():
        if not key.endswith("_score") and key not in ("face_match", "pose_match", "realism"):
            continue
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            continue
        scores.append(float(value))
    return scores


def verdict_from_payload(payload: Dict[str, Any], threshold: float = DEFAULT_PASS_THRESHOLD) -> QCVerdict:
    """Turn a verifier answer into a verdict.

    The verifier's own ``pass`` boolean is trusted when present. Otherwise
    every sub-score must be at or above ``threshold``.
    """
    sub_scores = _sub_scores(payload)

    explicit = next(
        (payload[k] for k in _SCORE_KEYS
         if isinstance(payload.get(k), (int, float)) and not isinstance(payload.get(k), bool)),
        None
    )
    if sub_scores:
        score = min(sub_scores)
    elif explicit is not None:
        score = float(explicit)
    else:
        score = 0.0

    raw_pass = payload.get("pass")
    if isinstance(raw_pass, bool):
        passed = raw_pass
    elif sub_scores:
        passed = all(s >= threshold for s in sub_scores)
    elif explicit is not None:
        passed = float(explicit) >= threshold
    else:
        passed = True

    issues = payload.get("issue") or payload.get("issues") or ""
    if isinstance(issues, list):
        issues = "; ".join(str(i) for i in issues)
    issues = str(issues)
    if not passed and not issues:
        issues = "Unknown issue"
    return QCVerdict(passed=passed, score=score, issues=issues)


class QualityGate:
    """Verifies candidates against a reference image, failing open."""

    def __init__(
        self,
        verifier: Verifier,
        threshold: float = DEFAULT_PASS_THRESHOLD,
        compressor: Compressor = compress,
        sink: Optional[EventSink] = None
    ):
        if not 0 < threshold <= 10:
            raise ValueError("threshold must be in (0, 10]")
        self.verifier = verifier
        self.threshold = threshold
        self._compress = compressor
        self._sink = sink

    def _fail_open(self, reason: str) -> QCVerdict:
        emit(self._sink, EventLevel.WARNING, COMPONENT, f"QC unavailable, accepting: {reason}")
        return QCVerdict(passed=True, score=0, issues=reason)

    def verify(
        self,
        reference: ImageBlob,
        candidate: ImageBlob,
        credential: Optional[str] = None
    ) -> QCVerdict:
        """Compare ``candidate`` with ``reference``.

        Args:
            reference: Original subject image
            candidate: Generated image
            credential: API key override for the verifier call

        Returns:
            The verdict. Never raises for verifier failures.
        """
        if not (credential or self.verifier.api_key):
            return self._fail_open("No API key")

        instruction = VERIFY_INSTRUCTION.replace("{threshold}", f"{self.threshold:g}")
        try:
            text = self.verifier.verify_images(
                self._compress(reference, QC_MAX_DIM, QC_QUALITY),
                self._compress(candidate, QC_MAX_DIM, QC_QUALITY),
                instruction,
                api_key=credential
            )
        except Exception as e:
            # fail open on every verifier failure, including timeouts
            return self._fail_open(f"API Fail: {e}")

        payload = extract_json(text)
        if payload is None:
            return self._fail_open("Parse Fail")

        verdict = verdict_from_payload(payload, self.threshold)
        level = EventLevel.INFO if verdict.passed else EventLevel.WARNING
        emit(
            self._sink, level, COMPONENT,
            f"QC {'Passed' if verdict.passed else 'Fail'} (Score: {verdict.score:g})"
            + ("" if verdict.passed else f": {verdict.issues}"),
            passed=verdict.passed,
            score=verdict.score
        )
        return verdict
