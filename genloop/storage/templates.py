"""
Shared template library kept in the object store.

Templates live under ``_templates/``, which the quota manager never evicts:

* ``_templates/config.json`` - metadata for every template, keyed by id
* ``_templates/thumb_<id>.jpg`` - optional preview image
* ``_templates/ref_<id>_<n>.jpg`` - style reference images

The config file holds metadata only. Image bytes are separate objects.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from genloop.core.models import ImageBlob

from .object_store import SupabaseObjectStore

logger = logging.getLogger(__name__)

TEMPLATE_DIR = "_templates"
CONFIG_KEY = f"{TEMPLATE_DIR}/config.json"
MAX_REFERENCE_IMAGES = 5

# Metadata copied through config.json unchanged
_PASSTHROUGH_KEYS = ("icon", "category", "isCustom", "bgColor")


def thumbnail_key(template_id: str) -> str:
    return f"{TEMPLATE_DIR}/thumb_{template_id}.jpg"


def reference_key(template_id: str, index: int) -> str:
    return f"{TEMPLATE_DIR}/ref_{template_id}_{index}.jpg"


@dataclass(frozen=True)
class TemplateRecord:
    """Metadata of one stored template."""
    id: str
    name: str = ""
    prompt: str = ""
    description: str = ""
    ref_count: int = 0
    has_thumbnail: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_config(cls, template_id: str, data: Dict[str, Any]) -> "TemplateRecord":
        return cls(
            id=template_id,
            name=str(data.get("name") or ""),
            prompt=str(data.get("prompt") or ""),
            description=str(data.get("description") or ""),
            ref_count=int(data.get("refCount") or 0),
            has_thumbnail=bool(data.get("hasThumbnail")),
            extra={k: data[k] for k in _PASSTHROUGH_KEYS if k in data},
        )

    def to_config(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"name": self.name, "prompt": self.prompt}
        if self.description:
            data["description"] = self.description
        data.update(self.extra)
        data["refCount"] = self.ref_count
        data["hasThumbnail"] = self.has_thumbnail
        return data


class TemplateLibrary:
    """Reads and writes templates in the shared object store."""

    def __init__(self, store: SupabaseObjectStore):
        self.store = store

    def load_records(self) -> Dict[str, TemplateRecord]:
        """Load every template record; an absent config means no templates.

        Raises:
            ValueError: If config.json is not a JSON object
        """
        raw = self.store.download(CONFIG_KEY)
        if raw is None:
            return {}
        try:
            config = json.loads(raw)
        except ValueError as e:
            raise ValueError(f"{CONFIG_KEY} is not valid JSON: {e}") from e
        if not isinstance(config, dict):
            raise ValueError(f"{CONFIG_KEY} must hold an object keyed by template id")
        return {
            template_id: TemplateRecord.from_config(template_id, data)
            for template_id, data in config.items()
            if isinstance(data, dict)
        }

    def get(self, template_id: str) -> Optional[TemplateRecord]:
        return self.load_records().get(template_id)

    def save_records(self, records: Sequence[TemplateRecord]) -> None:
        """Replace config.json with ``records``."""
        config = {record.id: record.to_config() for record in records}
        payload = json.dumps(config, indent=2, ensure_ascii=False).encode("utf-8")
        self.store.upload(CONFIG_KEY, payload, "application/json")

    def save_thumbnail(self, template_id: str, image: ImageBlob) -> None:
        self.store.upload(thumbnail_key(template_id), image.data, "image/jpeg")

    def save_reference_images(self, template_id: str, images: Sequence[ImageBlob]) -> int:
        """Write reference images in order and return how many were written.

        Raises:
            ValueError: If more than MAX_REFERENCE_IMAGES are given
        """
        if len(images) > MAX_REFERENCE_IMAGES:
            raise ValueError(f"a template holds at most {MAX_REFERENCE_IMAGES} reference images")
        for index, image in enumerate(images):
            self.store.upload(reference_key(template_id, index), image.data, "image/jpeg")
        return len(images)

    def delete(self, template_id: str) -> None:
        """Remove a template's images and drop it from config.json."""
        keys = [thumbnail_key(template_id)]
        keys.extend(reference_key(template_id, i) for i in range(MAX_REFERENCE_IMAGES))
        self.store.delete_objects(keys)
        records = self.load_records()
        if records.pop(template_id, None) is not None:
            self.save_records(list(records.values()))

    def reference_images(self, record: TemplateRecord) -> List[ImageBlob]:
        """Thumbnail first, then the reference images. Missing objects are skipped."""
        keys = [thumbnail_key(record.id)] if record.has_thumbnail else []
        keys.extend(reference_key(record.id, i) for i in range(record.ref_count))

        images: List[ImageBlob] = []
        for key in keys:
            data = self.store.download(key)
            if data is None:
                logger.warning(f"Template image {key} is missing, skipping")
                continue
            images.append(ImageBlob(data, "image/jpeg"))
        return images
