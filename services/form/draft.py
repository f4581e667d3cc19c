# services/form/draft.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Dict, List, Mapping, Optional

from services.records.domain import (
    IMAGE_SLOTS,
    RECORD_FIELDS,
    RMARecord,
    RMAStatus,
    check_slot,
    empty_images,
)

DEFAULT_FIELD_VALUES: Dict[str, str] = {
    "customer_country": "ALGERIA",
    "customer": "Bomare Company",
}


class Writer(str, Enum):
    DEFAULT = "default"
    USER = "user"
    EXTRACTION = "extraction"


class MergePolicy(str, Enum):
    LAST_WRITER_WINS = "last_writer_wins"
    USER_WINS = "user_wins"


@dataclass(frozen=True)
class TaggedValue:
    value: str
    written_by: Writer
    written_at: datetime


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _safe_str(x: object) -> str:
    if x is None:
        return ""
    return x.strip() if isinstance(x, str) else str(x).strip()


@dataclass
class DraftFormState:
    """
    In-memory record being created or edited.

    Every field carries who wrote it last and when. Extraction merges are
    last-writer-wins by default: a late extraction result replaces a value the
    user typed after the capture.
    """

    fields: Dict[str, TaggedValue] = field(default_factory=dict)
    images: Dict[str, Optional[str]] = field(default_factory=empty_images)

    @classmethod
    def new(cls, defaults: Optional[Mapping[str, str]] = None, today: Optional[date] = None) -> "DraftFormState":
        values = {k: "" for k in RECORD_FIELDS}
        values.update(DEFAULT_FIELD_VALUES)
        values["date"] = (today or date.today()).isoformat()
        for k, v in (defaults or {}).items():
            if k in values:
                values[k] = _safe_str(v)
        ts = _now()
        return cls(fields={k: TaggedValue(v, Writer.DEFAULT, ts) for k, v in values.items()})

    @classmethod
    def from_record(cls, record: RMARecord) -> "DraftFormState":
        ts = _now()
        return cls(
            fields={k: TaggedValue(record.get(k), Writer.DEFAULT, ts) for k in RECORD_FIELDS},
            images=dict(record.images),
        )

    # --- Fields ---
    def get(self, name: str) -> str:
        tagged = self.fields.get(name)
        return tagged.value if tagged else ""

    def provenance(self, name: str) -> Optional[TaggedValue]:
        return self.fields.get(name)

    def values(self) -> Dict[str, str]:
        return {k: self.get(k) for k in RECORD_FIELDS}

    def set_field(self, name: str, value: str) -> None:
        """Direct user edit; always wins at the time it happens."""
        if name not in RECORD_FIELDS:
            raise KeyError(f"Unknown form field '{name}'")
        self.fields[name] = TaggedValue(_safe_str(value), Writer.USER, _now())

    def apply_extraction(
        self,
        result: Mapping[str, object],
        *,
        policy: MergePolicy = MergePolicy.LAST_WRITER_WINS,
    ) -> List[str]:
        """
        Merge one extraction result. Empty values never overwrite; unknown keys are ignored.
        Returns the names of the fields that were written.
        """
        written: List[str] = []
        ts = _now()
        for name, raw in (result or {}).items():
            if name not in RECORD_FIELDS:
                continue
            value = _safe_str(raw)
            if not value:
                continue
            current = self.fields.get(name)
            if policy is MergePolicy.USER_WINS and current is not None and current.written_by is Writer.USER:
                continue
            self.fields[name] = TaggedValue(value, Writer.EXTRACTION, ts)
            written.append(name)
        return written

    def append_to_field(self, name: str, text: str, *, writer: Writer = Writer.EXTRACTION) -> None:
        current = self.get(name)
        addition = _safe_str(text)
        if not addition:
            return
        joined = f"{current}\n{addition}" if current else addition
        self.fields[name] = TaggedValue(joined, writer, _now())

    # --- Images ---
    def set_image(self, slot: str, data_url: str) -> None:
        self.images[check_slot(slot)] = data_url

    def clear_image(self, slot: str) -> None:
        self.images[check_slot(slot)] = None

    def has_image(self, slot: str) -> bool:
        return bool(self.images.get(check_slot(slot)))

    # --- Commit ---
    def to_record(
        self,
        *,
        record_id: str,
        created_at: str,
        status: RMAStatus = RMAStatus.PENDING,
    ) -> RMARecord:
        return RMARecord(
            id=record_id,
            created_at=created_at,
            status=status,
            fields=self.values(),
            images={slot: self.images.get(slot) or None for slot in IMAGE_SLOTS},
        )
