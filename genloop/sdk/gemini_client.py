"""
Metered Gemini REST client.

Builds generateContent request bodies, parses image and text parts out of
responses, and records cost events after every successful external call.
Transport retries are delegated to TransientRetryClient.
"""

import base64
import binascii
import logging
from typing import Any, Dict, List, Optional

from ..core.errors import NoArtifactProduced, TransportError
from ..core.models import GenerationRequest, GenerationResult, ImageBlob
from ..core.pricing import CostLedger
from ..core.token_counter import TokenUsage, usage_from_metadata
from ..core.transport import RequestSpec, TransientRetryClient
from ..storage.models import CostKind

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_IMAGE_MODEL = "gemini-3-pro-image-preview"
DEFAULT_VERIFIER_MODEL = "gemini-2.0-flash"

# Charged in place of usageMetadata when a response omits it
GENERATION_USAGE_ESTIMATE = TokenUsage(prompt_tokens=2000, completion_tokens=0)
VERIFICATION_USAGE_ESTIMATE = TokenUsage(prompt_tokens=800, completion_tokens=100)


def inline_part(image: ImageBlob) -> Dict[str, Any]:
    return {
        "inlineData": {
            "mimeType": image.mime_type,
            "data": base64.b64encode(image.data).decode("ascii"),
        }
    }


def build_generation_body(request: GenerationRequest) -> Dict[str, Any]:
    """Translate a GenerationRequest into a generateContent JSON body.

    Auxiliary images come first, each preceded by its label, then the
    subject, then the instruction as the last text part.
    """
    parts: List[Dict[str, Any]] = []
    for aux in request.auxiliary:
        if aux.label:
            parts.append({"text": aux.label})
        parts.append(inline_part(aux.image))
    parts.append({"text": request.subject_label})
    parts.append(inline_part(request.subject))
    parts.append({"text": f"INSTRUCTION: {request.instruction}"})
    return {
        "contents": [{"parts": parts}],
        "generationConfig": {
            "responseModalities": ["TEXT", "IMAGE"],
            "imageConfig": {
                "imageSize": request.image_size,
                "aspectRatio": request.aspect_ratio,
            },
        },
    }


def build_verification_body(
    reference: ImageBlob,
    candidate: ImageBlob,
    instruction: str
) -> Dict[str, Any]:
    return {
        "contents": [{
            "parts": [
                {"text": "ORIGINAL:"},
                inline_part(reference),
                {"text": "RESULT:"},
                inline_part(candidate),
                {"text": instruction},
            ]
        }],
        "generationConfig": {"responseMimeType": "application/json"},
    }


def _response_parts(body: Dict[str, Any]) -> List[Dict[str, Any]]:
    try:
        parts = body["candidates"][0]["content"]["parts"]
    except (KeyError, IndexError, TypeError):
        return []
    return [p for p in parts if isinstance(p, dict)]


def extract_image(body: Dict[str, Any]) -> Optional[ImageBlob]:
    """Return the first inline image part of a response, if any.

    Raises:
        ValueError: If the image part is not valid base64
    """
    for part in _response_parts(body):
        inline = part.get("inlineData") or part.get("inline_data")
        if isinstance(inline, dict) and inline.get("data"):
            try:
                data = base64.b64decode(inline["data"], validate=True)
            except binascii.Error as e:
                raise ValueError(f"Image part is not valid base64: {e}")
            mime_type = inline.get("mimeType") or inline.get("mime_type") or "image/png"
            return ImageBlob(data=data, mime_type=mime_type)
    return None


def extract_text(body: Dict[str, Any]) -> str:
    """Return the first text part of a response, or an empty string."""
    for part in _response_parts(body):
        if part.get("text"):
            return part["text"]
    return ""


class GeminiClient:
    """Gemini wire client that records usage for every call.

    All transport failures propagate unchanged. Cost events are only
    recorded once a 2xx response has been received.
    """

    def __init__(
        self,
        transport: TransientRetryClient,
        api_key: Optional[str],
        ledger: Optional[CostLedger] = None,
        model: str = DEFAULT_IMAGE_MODEL,
        verifier_model: str = DEFAULT_VERIFIER_MODEL,
        api_base: str = DEFAULT_API_BASE
    ):
        """Initialize the client.

        Args:
            transport: Retrying HTTP transport
            api_key: Credential attached to every call
            ledger: Cost ledger updated after each call
            model: Image generation model
            verifier_model: Model used for quality verification
            api_base: REST API base URL

        Raises:
            ValueError: If model or verifier_model is empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        if not verifier_model or not verifier_model.strip():
            raise ValueError("verifier_model is required and cannot be empty")
        self.transport = transport
        self.api_key = api_key
        self.ledger = ledger
        self.model = model
        self.verifier_model = verifier_model
        self.api_base = api_base.rstrip("/")

    def _spec(self, model: str, body: Dict[str, Any], api_key: Optional[str]) -> RequestSpec:
        key = api_key or self.api_key
        if not key:
            raise ValueError("No Google API key. Set GEMINI_API_KEY")
        return RequestSpec(
            method="POST",
            url=f"{self.api_base}/models/{model}:generateContent",
            json=body,
            headers={"Content-Type": "application/json", "x-goog-api-key": key},
        )

    def _post(self, model: str, body: Dict[str, Any], api_key: Optional[str] = None) -> Dict[str, Any]:
        response = self.transport.send(self._spec(model, body, api_key))
        try:
            return response.json()
        except ValueError as e:
            raise TransportError(f"Invalid JSON from {model}: {e}")

    def _record_usage(self, usage: TokenUsage, operation: str, images: int = 0) -> None:
        if self.ledger is None:
            return
        self.ledger.record(CostKind.TEXT_INPUT_UNITS, usage.prompt_tokens, operation)
        if usage.completion_tokens:
            self.ledger.record(CostKind.TEXT_OUTPUT_UNITS, usage.completion_tokens, operation)
        if images:
            self.ledger.record(CostKind.IMAGE_UNITS, images, operation)

    def generate(self, request: GenerationRequest) -> GenerationResult:
        """Issue one generation call.

        Args:
            request: Generation input for this attempt

        Returns:
            The produced image and any textual remark

        Raises:
            NoArtifactProduced: If the response has no image part
            TransportError: On fatal or exhausted transport failures
        """
        body = self._post(self.model, build_generation_body(request))
        image = extract_image(body)
        usage = usage_from_metadata(body, GENERATION_USAGE_ESTIMATE)
        self._record_usage(usage, "generate", images=1 if image else 0)

        remark = extract_text(body) or None
        if image is None:
            raise NoArtifactProduced(remark)
        logger.debug(f"Generated {image.mime_type} image ({image.size_bytes} bytes)")
        return GenerationResult(image=image, remark=remark)

    def verify_images(
        self,
        reference: ImageBlob,
        candidate: ImageBlob,
        instruction: str,
        api_key: Optional[str] = None
    ) -> str:
        """Ask the verifier model to compare two images.

        Returns:
            Raw answer text (expected to contain a JSON object)
        """
        body = self._post(
            self.verifier_model,
            build_verification_body(reference, candidate, instruction),
            api_key
        )
        self._record_usage(usage_from_metadata(body, VERIFICATION_USAGE_ESTIMATE), "verify")
        return extract_text(body)
