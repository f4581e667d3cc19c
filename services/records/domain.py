# services/records/domain.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class RMAStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    PROCESSING = "PROCESSING"


DEFECT_SYMPTOM = "defect_symptom"
FACTORY_BATCH = "factory_batch"
OC_SERIAL = "oc_serial"

IMAGE_SLOTS: Tuple[str, ...] = (DEFECT_SYMPTOM, FACTORY_BATCH, OC_SERIAL)

# Flat descriptive fields, in form order.
RECORD_FIELDS: Tuple[str, ...] = (
    "customer_country",
    "customer",
    "source",
    "size",
    "odf",
    "bom",
    "brand",
    "model_pn",
    "defect_description",
    "ver",
    "wc",
    "oc_serial_number",
    "remark",
    "date",
)

DEFECT_CATEGORIES: Tuple[str, ...] = (
    "Vertical Line",
    "Horizontal Line",
    "Vertical Bar",
    "Horizontal Bar",
    "Black Dot",
    "Bright Dot",
    "No Display",
    "Abnormal Display",
)
DEFAULT_DEFECT_CATEGORY = "Abnormal Display"


def check_slot(slot: str) -> str:
    if slot not in IMAGE_SLOTS:
        raise ValueError(f"Unknown image slot '{slot}'. Use one of: {', '.join(IMAGE_SLOTS)}.")
    return slot


def empty_images() -> Dict[str, Optional[str]]:
    return {slot: None for slot in IMAGE_SLOTS}


@dataclass
class RMARecord:
    """
    Persisted RMA case.

    `images` maps each of the three fixed slots to a data-URL string or None.
    """

    id: str
    created_at: str
    status: RMAStatus = RMAStatus.PENDING
    fields: Dict[str, str] = field(default_factory=dict)
    images: Dict[str, Optional[str]] = field(default_factory=empty_images)

    def __post_init__(self) -> None:
        self.status = RMAStatus(self.status)
        unknown = set(self.images) - set(IMAGE_SLOTS)
        if unknown:
            raise ValueError(f"Unknown image slots: {', '.join(sorted(unknown))}")
        self.images = {slot: (self.images.get(slot) or None) for slot in IMAGE_SLOTS}
        self.fields = {k: str(self.fields.get(k) or "") for k in RECORD_FIELDS}

    def get(self, name: str) -> str:
        return self.fields.get(name, "")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "created_at": self.created_at,
            "status": self.status.value,
            **{k: self.fields[k] for k in RECORD_FIELDS},
            "images": dict(self.images),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RMARecord":
        return cls(
            id=str(data["id"]),
            created_at=str(data.get("created_at") or ""),
            status=RMAStatus(data.get("status") or RMAStatus.PENDING.value),
            fields={k: data.get(k) for k in RECORD_FIELDS},
            images=dict(data.get("images") or {}),
        )
