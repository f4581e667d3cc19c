# services/pipeline.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from services.capture.sources import CameraSession, ClipboardItem, images_from_clipboard
from services.extraction.client import ExtractionClient
from services.extraction.errors import ExtractionError, ServiceUnreachable
from services.form.draft import DraftFormState, MergePolicy, Writer
from services.ingestion.normalizer import (
    LABEL_POLICY,
    PHOTO_POLICY,
    NormalizePolicy,
    UnsupportedImageFormat,
    normalize,
)
from services.ingestion.payload import ImagePayload, RawImage, parse_data_url
from services.records.domain import (
    DEFECT_SYMPTOM,
    FACTORY_BATCH,
    OC_SERIAL,
    RMARecord,
    RMAStatus,
    check_slot,
)
from services.records.store import RecordStore
from services.validation.schema_validation import ensure_valid_record

logger = logging.getLogger(__name__)

AI_ANALYSIS_PREFIX = "AI Analysis: "


class PipelineError(RuntimeError):
    """Session misuse: unknown slot, or an action missing its input image."""


@dataclass(frozen=True)
class PipelineConfig:
    photo_policy: NormalizePolicy = PHOTO_POLICY
    label_policy: NormalizePolicy = LABEL_POLICY
    extraction_timeout_s: Optional[float] = 30.0
    merge_policy: MergePolicy = MergePolicy.LAST_WRITER_WINS


@dataclass
class CaptureOutcome:
    slot: str
    payload: ImagePayload
    extracted: Dict[str, str] = field(default_factory=dict)
    written: List[str] = field(default_factory=list)
    error: Optional[ExtractionError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class RMAFormSession:
    """
    One create/edit session: capture -> normalize -> extract -> merge into the draft.

    Within one capture the three steps run strictly in order. Captures for
    different slots may overlap; each extraction writes only its own fields.
    """

    # Slot -> extraction triggered right after that slot is captured.
    SLOT_EXTRACTIONS: Dict[str, str] = {
        DEFECT_SYMPTOM: "detect_defect_category",
        OC_SERIAL: "extract_oc_label",
        FACTORY_BATCH: "extract_factory_label",
    }

    def __init__(
        self,
        *,
        extractor: ExtractionClient,
        draft: Optional[DraftFormState] = None,
        config: Optional[PipelineConfig] = None,
        editing: Optional[RMARecord] = None,
    ) -> None:
        self.extractor = extractor
        self.config = config or PipelineConfig()
        self.editing = editing
        if draft is None:
            draft = DraftFormState.from_record(editing) if editing else DraftFormState.new()
        self.draft = draft

    @staticmethod
    def _slot(slot: str) -> str:
        try:
            return check_slot(slot)
        except ValueError as e:
            raise PipelineError(str(e)) from e

    def policy_for(self, slot: str) -> NormalizePolicy:
        return self.config.photo_policy if self._slot(slot) == DEFECT_SYMPTOM else self.config.label_policy

    # --- Capture ---
    async def capture(self, slot: str, raw: RawImage) -> CaptureOutcome:
        self._slot(slot)
        payload = await asyncio.to_thread(normalize, raw, self.policy_for(slot))
        data_url = payload.to_data_url()
        self.draft.set_image(slot, data_url)

        outcome = CaptureOutcome(slot=slot, payload=payload)
        try:
            outcome.extracted = await self._extract(slot, data_url)
        except ExtractionError as e:
            logger.warning("auto-extraction for %s failed: %s", slot, e)
            outcome.error = e
            return outcome

        outcome.written = self.draft.apply_extraction(outcome.extracted, policy=self.config.merge_policy)
        return outcome

    async def capture_clipboard(self, slot: str, items: Iterable[ClipboardItem]) -> List[CaptureOutcome]:
        outcomes: List[CaptureOutcome] = []
        for raw in images_from_clipboard(items):
            try:
                outcomes.append(await self.capture(slot, raw))
            except UnsupportedImageFormat as e:
                logger.warning("Skipping clipboard item %s: %s", raw.mime_type or "?", e)
        return outcomes

    async def capture_camera(self, slot: str, open_camera: Callable[[], CameraSession]) -> CaptureOutcome:
        self._slot(slot)
        with open_camera() as camera:
            raw = await asyncio.to_thread(camera.snapshot)
        return await self.capture(slot, raw)

    def clear_image(self, slot: str) -> None:
        self.draft.clear_image(self._slot(slot))

    async def _extract(self, slot: str, data_url: str) -> Dict[str, str]:
        op = getattr(self.extractor, self.SLOT_EXTRACTIONS[slot])
        return await self._call(op, data_url)

    async def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        timeout = self.config.extraction_timeout_s
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise ServiceUnreachable(f"extraction timed out after {timeout}s") from e

    # --- Explicit actions ---
    async def request_defect_analysis(self) -> str:
        """Free-text analysis of the symptom photo, appended to the remark."""
        data_url = self.draft.images.get(DEFECT_SYMPTOM)
        if not data_url:
            raise PipelineError("Capture the defect symptom picture before requesting AI analysis.")
        try:
            parse_data_url(data_url)
        except ValueError as e:
            raise PipelineError(f"Stored defect symptom picture is unreadable: {e}") from e
        text = await self._call(self.extractor.analyze_defect, data_url, self.draft.get("defect_description"))
        self.draft.append_to_field("remark", f"{AI_ANALYSIS_PREFIX}{text}", writer=Writer.EXTRACTION)
        return text

    def commit(self, store: RecordStore) -> RMARecord:
        if self.editing is not None:
            record = self.draft.to_record(
                record_id=self.editing.id,
                created_at=self.editing.created_at,
                status=self.editing.status,
            )
        else:
            record = self.draft.to_record(
                record_id=store.next_id(),
                created_at=datetime.now(timezone.utc).isoformat(),
                status=RMAStatus.PENDING,
            )
        ensure_valid_record(record.to_dict())
        store.upsert(record)
        logger.info("saved RMA record %s", record.id)
        return record
