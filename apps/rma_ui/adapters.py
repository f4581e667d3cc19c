# apps/rma_ui/adapters.py
from __future__ import annotations

from typing import Any, Iterable, List, Optional

import pandas as pd

from services.capture.sources import picked_upload
from services.ingestion.payload import RawImage, SourceKind
from services.records.domain import IMAGE_SLOTS, RECORD_FIELDS, RMARecord

SLOT_LABELS = {
    "defect_symptom": "Picture Of Defective Symptom",
    "factory_batch": "Factory Batch No. / ODF No.",
    "oc_serial": "Picture Of O/C Serial Number",
}

FIELD_LABELS = {
    "customer_country": "Customer Country",
    "customer": "Customer",
    "source": "Source (Market/Factory)",
    "size": "Size",
    "odf": "ODF",
    "bom": "Expressluck BOM",
    "brand": "Brand",
    "model_pn": "Model P/N (Panel Part No)",
    "defect_description": "Defect Description",
    "ver": "Ver.",
    "wc": "W/C (Week/Cycle)",
    "oc_serial_number": "OC Serial Number",
    "remark": "Remark",
    "date": "Date",
}

SOURCE_OPTIONS = ["", "Market", "Factory"]


def upload_token(uploaded: Any) -> str:
    """Stable identity of a Streamlit upload, so a rerun does not re-trigger extraction."""
    file_id = getattr(uploaded, "file_id", None)
    if file_id:
        return str(file_id)
    return f"{getattr(uploaded, 'name', '')}:{getattr(uploaded, 'size', 0)}"


def raw_from_upload(uploaded: Any, *, camera: bool = False) -> Optional[RawImage]:
    data = uploaded.getvalue()
    name = getattr(uploaded, "name", "") or "upload"
    mime = getattr(uploaded, "type", None)
    if camera:
        return RawImage(data=data, source_kind=SourceKind.CAMERA, filename=name, mime_type=mime or "image/jpeg")
    return picked_upload(name, data, mime)


def is_edit(widget_value: Optional[str], current: str) -> bool:
    """Compare the way the draft stores values, so padding alone is not an edit."""
    return (widget_value or "").strip() != current


def records_frame(records: Iterable[RMARecord]) -> pd.DataFrame:
    rows: List[dict] = []
    for r in records:
        row = {"NO": r.id, "Status": r.status.value}
        row.update({FIELD_LABELS[k]: r.get(k) for k in RECORD_FIELDS})
        row.update({SLOT_LABELS[s]: ("yes" if r.images.get(s) else "") for s in IMAGE_SLOTS})
        rows.append(row)
    columns = ["NO", "Status"] + [FIELD_LABELS[k] for k in RECORD_FIELDS] + [SLOT_LABELS[s] for s in IMAGE_SLOTS]
    return pd.DataFrame(rows, columns=columns)
