"""
Unit tests for per-item request construction and image compression.
"""

from io import BytesIO
from unittest.mock import Mock

import pytest
from PIL import Image

from genloop.core.imaging import compress, passthrough
from genloop.core.models import ImageBlob, WorkItem
from genloop.core.request_builder import BatchMode, PipelineOptions, RequestBuilder

SUBJECT = WorkItem(id="p1", source_ref="p1.jpg", subject=ImageBlob(b"subject"))


def _png(width, height):
    out = BytesIO()
    Image.new("RGBA", (width, height), (255, 0, 0, 255)).save(out, format="PNG")
    return ImageBlob(out.getvalue(), "image/png")


class TestCompress:
    """Test compress."""

    def test_downscales_longest_side(self):
        result = compress(_png(2000, 1000), 1024, 0.75)

        assert result.mime_type == "image/jpeg"
        with Image.open(BytesIO(result.data)) as img:
            assert img.size == (1024, 512)
            assert img.mode == "RGB"

    def test_small_image_keeps_size(self):
        result = compress(_png(100, 50), 768, 0.7)

        with Image.open(BytesIO(result.data)) as img:
            assert img.size == (100, 50)

    def test_undecodable_passes_through(self):
        blob = ImageBlob(b"not an image", "image/png")
        assert compress(blob, 768, 0.7) is blob

    def test_invalid_arguments(self):
        with pytest.raises(ValueError, match="max_dim"):
            compress(_png(10, 10), 0, 0.7)
        with pytest.raises(ValueError, match="quality"):
            compress(_png(10, 10), 10, 1.5)


class TestPipelineOptions:
    """Test PipelineOptions validation."""

    def test_composite_requires_background(self):
        with pytest.raises(ValueError, match="background"):
            PipelineOptions(mode=BatchMode.COMPOSITE)

    def test_template_requires_description(self):
        with pytest.raises(ValueError, match="template description"):
            PipelineOptions(mode=BatchMode.TEMPLATE, template_description="  ")


class TestRequestBuilder:
    """Test RequestBuilder.build."""

    def test_composite(self):
        options = PipelineOptions(
            background=ImageBlob(b"bg"),
            instruction="Add soft shadows.",
            aspect_ratio="3:4",
        )

        request = RequestBuilder(options, compressor=passthrough).build(SUBJECT)

        assert request.subject_label == "SUBJECT TO COMPOSITE:"
        assert [a.label for a in request.auxiliary] == ["BACKGROUND IMAGE:"]
        assert request.instruction.startswith("Composite the subject onto this background.")
        assert "Keep the subject face exactly the same." in request.instruction
        assert request.instruction.endswith("Add soft shadows.")
        assert request.aspect_ratio == "3:4"

    def test_composite_flags_off(self):
        options = PipelineOptions(
            background=ImageBlob(b"bg"),
            keep_face=False,
            keep_pose=False,
            match_light=False,
        )

        request = RequestBuilder(options, compressor=passthrough).build(SUBJECT)

        assert request.instruction == "Composite the subject onto this background. Make it photorealistic."

    def test_template_with_references(self):
        ref = ImageBlob(b"ref1")
        options = PipelineOptions(
            mode=BatchMode.TEMPLATE,
            template_description="white seamless studio",
            references=(ref, ImageBlob(b"ref2"), ImageBlob(b"ref1")),
        )

        request = RequestBuilder(options, compressor=passthrough).build(SUBJECT)

        assert request.subject_label == "SUBJECT(S) TO COMPOSITE:"
        assert [a.label for a in request.auxiliary] == ["REFERENCE STUDIO IMAGES:", ""]
        assert "white seamless studio" in request.instruction
        assert request.instruction.endswith("Match REFERENCE IMAGES style exactly.")

    def test_template_without_references(self):
        options = PipelineOptions(mode=BatchMode.TEMPLATE, template_description="beach")

        request = RequestBuilder(options, compressor=passthrough).build(SUBJECT)

        assert request.auxiliary == ()
        assert "REFERENCE" not in request.instruction

    def test_auxiliary_compressed_once_per_run(self):
        compressor = Mock(side_effect=lambda image, max_dim, quality: image)
        builder = RequestBuilder(PipelineOptions(background=ImageBlob(b"bg")), compressor=compressor)

        builder.build(SUBJECT)
        builder.build(SUBJECT)

        settings = [call[0][1:] for call in compressor.call_args_list]
        assert settings == [(1536, 0.85), (1536, 0.85), (1536, 0.85)]

    def test_template_reference_uses_reference_settings(self):
        compressor = Mock(side_effect=lambda image, max_dim, quality: image)
        options = PipelineOptions(
            mode=BatchMode.TEMPLATE, template_description="studio", references=(ImageBlob(b"ref"),)
        )

        RequestBuilder(options, compressor=compressor).build(SUBJECT)

        assert compressor.call_args_list[0][0][1:] == (1024, 0.75)
