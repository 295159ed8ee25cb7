"""
Per-item request construction for batch runs.

Two batch modes are supported:

* ``composite`` - place the subject onto a supplied background image
* ``template`` - generate a studio background from a description, optionally
  matching a set of style reference images

Auxiliary images are compressed once per run, the subject once per item.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

from .imaging import (
    REFERENCE_MAX_DIM,
    REFERENCE_QUALITY,
    SUBJECT_MAX_DIM,
    SUBJECT_QUALITY,
    Compressor,
    compress,
)
from .models import GenerationRequest, ImageBlob, LabeledImage, WorkItem


class BatchMode(Enum):
    COMPOSITE = "composite"
    TEMPLATE = "template"


@dataclass(frozen=True)
class PipelineOptions:
    """Settings shared by every item of a batch run."""
    mode: BatchMode = BatchMode.COMPOSITE
    instruction: str = ""
    background: Optional[ImageBlob] = None
    references: Tuple[ImageBlob, ...] = ()
    template_description: str = ""
    aspect_ratio: str = "1:1"
    image_size: str = "4K"
    keep_face: bool = True
    keep_pose: bool = True
    match_light: bool = True
    qc_enabled: bool = True
    attempt_budget: int = 2

    def __post_init__(self):
        if self.attempt_budget < 1:
            raise ValueError("attempt_budget must be >= 1")
        if self.mode == BatchMode.COMPOSITE and self.background is None:
            raise ValueError("composite mode requires a background image")
        if self.mode == BatchMode.TEMPLATE and not self.template_description.strip():
            raise ValueError("template mode requires a template description")


def _composite_instruction(options: PipelineOptions) -> str:
    parts = ["Composite the subject onto this background."]
    if options.keep_face:
        parts.append("Keep the subject face exactly the same.")
    if options.keep_pose:
        parts.append("Maintain exact same body pose.")
    if options.match_light:
        parts.append("Match lighting and color temperature.")
    parts.append("Make it photorealistic.")
    if options.instruction:
        parts.append(options.instruction)
    return " ".join(parts)


def _template_instruction(options: PipelineOptions, has_refs: bool) -> str:
    text = (
        f"Generate a background based on: {options.template_description}. "
        "Composite the subject onto it. Keep all faces, poses exactly same. "
        "Match lighting. Photorealistic."
    )
    if has_refs:
        text += " Match REFERENCE IMAGES style exactly."
    if options.instruction:
        text += f" {options.instruction}"
    return text


class RequestBuilder:
    """Builds the initial GenerationRequest for each work item of a run."""

    def __init__(self, options: PipelineOptions, compressor: Compressor = compress):
        self.options = options
        self._compress = compressor
        self._auxiliary = self._prepare_auxiliary()

    def _prepare_auxiliary(self) -> Tuple[LabeledImage, ...]:
        options = self.options
        if options.mode == BatchMode.COMPOSITE:
            background = self._compress(options.background, SUBJECT_MAX_DIM, SUBJECT_QUALITY)
            return (LabeledImage("BACKGROUND IMAGE:", background),)

        aux: List[LabeledImage] = []
        seen = set()
        for ref in options.references:
            if ref.data in seen:
                continue
            seen.add(ref.data)
            label = "REFERENCE STUDIO IMAGES:" if not aux else ""
            aux.append(LabeledImage(label, self._compress(ref, REFERENCE_MAX_DIM, REFERENCE_QUALITY)))
        return tuple(aux)

    def build(self, item: WorkItem) -> GenerationRequest:
        options = self.options
        if options.mode == BatchMode.COMPOSITE:
            instruction = _composite_instruction(options)
            subject_label = "SUBJECT TO COMPOSITE:"
        else:
            instruction = _template_instruction(options, bool(self._auxiliary))
            subject_label = "SUBJECT(S) TO COMPOSITE:"
        return GenerationRequest(
            subject=self._compress(item.subject, SUBJECT_MAX_DIM, SUBJECT_QUALITY),
            instruction=instruction,
            auxiliary=self._auxiliary,
            subject_label=subject_label,
            aspect_ratio=options.aspect_ratio,
            image_size=options.image_size,
        )
