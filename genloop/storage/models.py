"""
Data models for storage layer.

Defines persisted cost events and objects held in the shared artifact store.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum


class CostKind(Enum):
    """Metered unit kinds."""
    TEXT_INPUT_UNITS = "text_input_units"
    TEXT_OUTPUT_UNITS = "text_output_units"
    IMAGE_UNITS = "image_units"


@dataclass(frozen=True)
class CostEvent:
    """Immutable record of metered consumption.
    
    Append-only events that form an auditable ledger of external calls.
    Once written, these records must never be modified.
    """
    kind: CostKind
    amount: Decimal
    timestamp: datetime
    operation: str = ""


@dataclass(frozen=True)
class StorageObject:
    """A persisted artifact in the shared object store.
    
    The quota manager only ever changes an object's presence, never its bytes.
    """
    key: str
    size_bytes: int
    created_at: datetime
