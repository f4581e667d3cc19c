# apps/common/settings.py
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from services.extraction.client import FallbackPolicy
from services.extraction.service import DEFAULT_GEMINI_BASE_URL, DEFAULT_GEMINI_MODEL
from services.ingestion.normalizer import NormalizePolicy


def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    return data or {}


def _env(key: str) -> Optional[str]:
    v = os.getenv(key)
    return v.strip() if isinstance(v, str) and v.strip() else None


def _as_path(v: str) -> Path:
    return Path(v).expanduser().resolve()


@dataclass(frozen=True)
class AppSettings:
    gemini_api_key: Optional[str]
    gemini_model: str
    gemini_base_url: str
    fallback_policy: FallbackPolicy
    extraction_timeout_s: float
    simulated_delay_s: float
    photo_policy: NormalizePolicy
    label_policy: NormalizePolicy
    records_path: Path
    export_dir: Path
    log_level: str = "INFO"
    draft_defaults: Dict[str, str] = field(default_factory=dict)


def _policy(section: Any, default_edge: int, default_quality: float, key: str, cfg_path: Path) -> NormalizePolicy:
    section = section or {}
    try:
        return NormalizePolicy(
            max_edge=int(section.get("max_edge", default_edge)),
            quality=float(section.get("quality", default_quality)),
        )
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid {key}: {e}. Config file used: {cfg_path}") from e


def load_settings(config_path: Optional[str] = None) -> AppSettings:
    """
    Resolution order (highest -> lowest):
      1) Explicit function argument
      2) RMA_CONFIG_PATH env var
      3) config/app.yaml
    Individual fields can be overridden via env vars:
      - RMA_GEMINI_API_KEY (then GEMINI_API_KEY, then API_KEY)
      - RMA_GEMINI_MODEL
      - RMA_FALLBACK_POLICY
      - RMA_EXTRACTION_TIMEOUT_S
      - RMA_RECORDS_PATH
      - RMA_EXPORT_DIR
      - RMA_LOG_LEVEL
    """
    cfg_path = (
        Path(config_path)
        if config_path
        else Path(_env("RMA_CONFIG_PATH") or "config/app.yaml")
    )
    cfg = _read_yaml(cfg_path)
    extraction = cfg.get("extraction") or {}
    normalizer = cfg.get("normalizer") or {}

    api_key = (
        _env("RMA_GEMINI_API_KEY")
        or _env("GEMINI_API_KEY")
        or _env("API_KEY")
        or extraction.get("api_key")
    )

    policy_raw = _env("RMA_FALLBACK_POLICY") or extraction.get("fallback_policy") or FallbackPolicy.SIMULATE_ON_MISSING_CREDENTIAL.value
    try:
        policy = FallbackPolicy(str(policy_raw).strip().lower())
    except ValueError as e:
        allowed = ", ".join(p.value for p in FallbackPolicy)
        raise ValueError(
            f"Invalid fallback_policy '{policy_raw}' (use one of: {allowed}). Config file used: {cfg_path}"
        ) from e

    try:
        timeout_s = float(_env("RMA_EXTRACTION_TIMEOUT_S") or extraction.get("timeout_s", 30))
        delay_s = float(extraction.get("simulated_delay_s", 0.8))
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid extraction timing: {e}. Config file used: {cfg_path}") from e
    if timeout_s <= 0:
        raise ValueError(f"extraction.timeout_s must be positive. Config file used: {cfg_path}")

    records_path = _env("RMA_RECORDS_PATH") or cfg.get("records_path") or "data/rma_records.json"
    export_dir = _env("RMA_EXPORT_DIR") or cfg.get("export_dir") or "data/exports"

    return AppSettings(
        gemini_api_key=str(api_key) if api_key else None,
        gemini_model=_env("RMA_GEMINI_MODEL") or extraction.get("model") or DEFAULT_GEMINI_MODEL,
        gemini_base_url=extraction.get("base_url") or DEFAULT_GEMINI_BASE_URL,
        fallback_policy=policy,
        extraction_timeout_s=timeout_s,
        simulated_delay_s=max(0.0, delay_s),
        photo_policy=_policy(normalizer.get("photo"), 800, 0.6, "normalizer.photo", cfg_path),
        label_policy=_policy(normalizer.get("label"), 1600, 0.9, "normalizer.label", cfg_path),
        records_path=_as_path(str(records_path)),
        export_dir=_as_path(str(export_dir)),
        log_level=(_env("RMA_LOG_LEVEL") or cfg.get("log_level") or "INFO").upper(),
        draft_defaults={str(k): str(v) for k, v in (cfg.get("draft_defaults") or {}).items()},
    )
