# services/records/store.py
from __future__ import annotations

import json
import logging
import tempfile
from pathlib import Path
from typing import Iterable, List, Optional, Protocol

from services.records.domain import RMARecord

logger = logging.getLogger(__name__)


class RecordStore(Protocol):
    def list(self) -> List[RMARecord]: ...
    def upsert(self, record: RMARecord) -> None: ...
    def next_id(self) -> str: ...


class LocalRecordStore:
    """
    Whole collection in one JSON file, replaced atomically on every save.
    New records go to the front, matching the dashboard's newest-first order.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def list(self) -> List[RMARecord]:
        if not self.path.exists():
            return []
        data = json.loads(self.path.read_text(encoding="utf-8"))
        items = data.get("records", []) if isinstance(data, dict) else data
        return [RMARecord.from_dict(item) for item in items]

    def get(self, record_id: str) -> Optional[RMARecord]:
        for r in self.list():
            if r.id == record_id:
                return r
        return None

    def upsert(self, record: RMARecord) -> None:
        records = self.list()
        for i, existing in enumerate(records):
            if existing.id == record.id:
                records[i] = record
                break
        else:
            records.insert(0, record)
        self._write(records)

    def delete(self, record_id: str) -> bool:
        records = self.list()
        kept = [r for r in records if r.id != record_id]
        if len(kept) == len(records):
            return False
        self._write(kept)
        return True

    def next_id(self) -> str:
        ids = [int(r.id) for r in self.list() if r.id.isdigit()]
        return str(max(ids) + 1) if ids else "1"

    def _write(self, records: Iterable[RMARecord]) -> None:
        payload = {"records": [r.to_dict() for r in records]}
        with tempfile.NamedTemporaryFile(
            "w", delete=False, dir=str(self.path.parent), suffix=".tmp", encoding="utf-8"
        ) as tf:
            tf.write(json.dumps(payload, indent=2))
            tmpname = tf.name
        Path(tmpname).replace(self.path)  # atomic on same filesystem
        logger.debug("wrote %d records to %s", len(payload["records"]), self.path)


def search_records(records: Iterable[RMARecord], query: str) -> List[RMARecord]:
    q = (query or "").strip().lower()
    if not q:
        return list(records)
    out = []
    for r in records:
        haystack = (r.id, r.get("oc_serial_number"), r.get("customer"), r.get("model_pn"))
        if any(q in h.lower() for h in haystack):
            out.append(r)
    return out
