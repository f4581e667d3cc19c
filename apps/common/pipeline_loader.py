from __future__ import annotations

import logging
from functools import lru_cache
from typing import Optional

from apps.common.settings import AppSettings, load_settings
from services.extraction.client import ExtractionClient, ExtractionConfig, Tier, has_valid_credential
from services.extraction.service import GeminiConfig, GeminiVisionService
from services.form.draft import DraftFormState
from services.pipeline import PipelineConfig, RMAFormSession
from services.records.domain import RMARecord
from services.records.store import LocalRecordStore

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


def build_extraction_client(settings: AppSettings) -> ExtractionClient:
    service = None
    if has_valid_credential(settings.gemini_api_key):
        service = GeminiVisionService(
            GeminiConfig(
                api_key=str(settings.gemini_api_key).strip(),
                base_url=settings.gemini_base_url,
                model=settings.gemini_model,
                timeout_s=settings.extraction_timeout_s,
            )
        )

    client = ExtractionClient(
        service=service,
        api_key=settings.gemini_api_key,
        config=ExtractionConfig(
            policy=settings.fallback_policy,
            simulated_delay_s=settings.simulated_delay_s,
        ),
    )
    if client.tier is Tier.SIMULATED:
        logger.warning("No valid Gemini credential configured; extraction runs in simulated mode.")
    return client


def build_store(settings: AppSettings) -> LocalRecordStore:
    return LocalRecordStore(settings.records_path)


def new_session(
    settings: AppSettings,
    extractor: ExtractionClient,
    editing: Optional[RMARecord] = None,
) -> RMAFormSession:
    draft = None if editing else DraftFormState.new(settings.draft_defaults)
    return RMAFormSession(
        extractor=extractor,
        draft=draft,
        editing=editing,
        config=PipelineConfig(
            photo_policy=settings.photo_policy,
            label_policy=settings.label_policy,
            extraction_timeout_s=settings.extraction_timeout_s,
        ),
    )
