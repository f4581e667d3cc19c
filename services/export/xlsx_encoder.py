# services/export/xlsx_encoder.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from io import BytesIO
from pathlib import Path
from typing import Iterable, Optional, Sequence, Tuple

from openpyxl import Workbook
from openpyxl.drawing.image import Image as XLImage
from openpyxl.drawing.spreadsheet_drawing import AnchorMarker, TwoCellAnchor
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.worksheet import Worksheet
from PIL import Image, UnidentifiedImageError

from services.ingestion.payload import parse_data_url
from services.records.domain import RMARecord

logger = logging.getLogger(__name__)

XLSX_MIME_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
SHEET_TITLE = "RMA Records"

COLUMN_WIDTH = 25
HEADER_ROW_HEIGHT = 35
DATA_ROW_HEIGHT = 70
FONT_NAME = "Courier New"
FONT_SIZE = 9

# Header fill per column role (ARGB).
ROLE_COLORS = {
    "identifier": "FFFFC000",
    "cross_reference": "FF0070C0",
    "remark": "FFFFFF00",
    "date": "FFFFFFFF",
}

# Raster formats embedded as-is; anything else is transcoded to PNG first.
_PASSTHROUGH_FORMATS = {"jpeg", "png", "gif"}


class ExportImageSkipped(ValueError):
    """One image could not be embedded; the export continues without it."""


class ExportWriteFailed(RuntimeError):
    pass


@dataclass(frozen=True)
class ColumnSpec:
    header: str
    role: str
    field: Optional[str] = None
    image_slot: Optional[str] = None


COLUMNS: Tuple[ColumnSpec, ...] = (
    ColumnSpec("NO", "identifier"),
    ColumnSpec("Customer Country", "identifier", field="customer_country"),
    ColumnSpec("Customer", "identifier", field="customer"),
    ColumnSpec("From Market or Factory", "cross_reference", field="source"),
    ColumnSpec("Size", "identifier", field="size"),
    ColumnSpec("ODF", "identifier", field="odf"),
    ColumnSpec("EXPRESSLUCK BOM", "identifier", field="bom"),
    ColumnSpec("Brand", "identifier", field="brand"),
    ColumnSpec("Model P/N(Panel Part No)", "identifier", field="model_pn"),
    ColumnSpec("Defect description", "cross_reference", field="defect_description"),
    ColumnSpec("Ver.", "identifier", field="ver"),
    ColumnSpec("W/C", "identifier", field="wc"),
    ColumnSpec("OC Serial Number", "cross_reference", field="oc_serial_number"),
    ColumnSpec("Picture Of Defective Symptom", "cross_reference", image_slot="defect_symptom"),
    ColumnSpec("Factory batch No. picture (ODF No. )", "cross_reference", image_slot="factory_batch"),
    ColumnSpec("Picture Of O/C Serial Number", "cross_reference", image_slot="oc_serial"),
    ColumnSpec("Remark", "remark", field="remark"),
    ColumnSpec("date", "date", field="date"),
)

_THIN = Side(style="thin")
THIN_BORDER = Border(left=_THIN, right=_THIN, top=_THIN, bottom=_THIN)
CENTER_WRAP = Alignment(horizontal="center", vertical="center", wrap_text=True)
HEADER_FONT = Font(name=FONT_NAME, size=FONT_SIZE, bold=True)
DATA_FONT = Font(name=FONT_NAME, size=FONT_SIZE)


def export_filename(now: Optional[datetime] = None) -> str:
    ts = now or datetime.now()
    return f"RMA_Export_{ts.strftime('%Y-%m-%d_%H%M%S')}.xlsx"


def image_format_from_subtype(subtype: str) -> str:
    s = (subtype or "").lower().strip()
    return "jpeg" if s in ("jpg", "jpeg", "pjpeg") else s


def _cell_row_value(record: RMARecord, col: ColumnSpec) -> str:
    if col.header == "NO":
        return record.id
    if col.field:
        return record.get(col.field)
    return ""


def build_image(data_url: str) -> XLImage:
    """
    Data-URL -> openpyxl image. The declared MIME type must agree with the decoded bytes.
    """
    try:
        subtype, data = parse_data_url(data_url)
    except ValueError as e:
        raise ExportImageSkipped(str(e)) from e

    declared = image_format_from_subtype(subtype)
    try:
        with Image.open(BytesIO(data)) as decoded:
            actual = (decoded.format or "").lower()
            if actual != declared:
                raise ExportImageSkipped(f"declared image/{subtype} but bytes are {actual or 'unknown'}")
            decoded.load()
            if actual not in _PASSTHROUGH_FORMATS:
                converted = BytesIO()
                decoded.save(converted, format="PNG")
                data, actual = converted.getvalue(), "png"
    except ExportImageSkipped:
        raise
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
        raise ExportImageSkipped(f"undecodable image: {e}") from e

    img = XLImage(BytesIO(data))
    img.format = actual
    return img


def place_image(ws: Worksheet, img: XLImage, *, row: int, col: int) -> None:
    """Pin an image to exactly one cell (1-based row/col); it does not resize with the cell."""
    anchor = TwoCellAnchor(editAs="oneCell")
    anchor._from = AnchorMarker(col=col - 1, row=row - 1)
    anchor.to = AnchorMarker(col=col, row=row)
    img.anchor = anchor
    ws.add_image(img)


def _write_header(ws: Worksheet, columns: Sequence[ColumnSpec]) -> None:
    for idx, col in enumerate(columns, start=1):
        cell = ws.cell(row=1, column=idx, value=col.header)
        color = ROLE_COLORS[col.role]
        cell.fill = PatternFill(start_color=color, end_color=color, fill_type="solid")
        cell.font = HEADER_FONT
        cell.alignment = CENTER_WRAP
        cell.border = THIN_BORDER
        ws.column_dimensions[get_column_letter(idx)].width = COLUMN_WIDTH
    ws.row_dimensions[1].height = HEADER_ROW_HEIGHT


def encode(records: Iterable[RMARecord]) -> bytes:
    """
    Serialize records to an .xlsx document: one header row, then one row per record
    in input order. Bad images are logged and skipped.
    """
    wb = Workbook()
    ws = wb.active
    ws.title = SHEET_TITLE
    _write_header(ws, COLUMNS)

    embedded = 0
    for row_idx, record in enumerate(records, start=2):
        for col_idx, col in enumerate(COLUMNS, start=1):
            cell = ws.cell(row=row_idx, column=col_idx, value=_cell_row_value(record, col))
            cell.font = DATA_FONT
            cell.alignment = CENTER_WRAP
            cell.border = THIN_BORDER

            if not col.image_slot:
                continue
            data_url = record.images.get(col.image_slot)
            if not data_url:
                continue
            try:
                place_image(ws, build_image(data_url), row=row_idx, col=col_idx)
                embedded += 1
            except ExportImageSkipped as e:
                logger.warning("record %s: skipped %s image: %s", record.id, col.image_slot, e)
            except Exception:
                logger.exception("record %s: failed to embed %s image", record.id, col.image_slot)
        ws.row_dimensions[row_idx].height = DATA_ROW_HEIGHT

    buf = BytesIO()
    wb.save(buf)
    logger.info("encoded %d rows with %d images", ws.max_row - 1, embedded)
    return buf.getvalue()


def write_export(records: Iterable[RMARecord], out_dir: str | Path, *, now: Optional[datetime] = None) -> Path:
    out = Path(out_dir) / export_filename(now)
    blob = encode(records)
    try:
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_bytes(blob)
    except OSError as e:
        raise ExportWriteFailed(f"Could not write export to {out}: {e}") from e
    return out
