from __future__ import annotations

import pytest

from apps.common.pipeline_loader import build_extraction_client, build_store, new_session
from apps.common.settings import load_settings
from services.extraction.client import FallbackPolicy, Tier
from services.extraction.service import DEFAULT_GEMINI_MODEL, GeminiVisionService

ENV_KEYS = (
    "RMA_CONFIG_PATH",
    "RMA_GEMINI_API_KEY",
    "GEMINI_API_KEY",
    "API_KEY",
    "RMA_GEMINI_MODEL",
    "RMA_FALLBACK_POLICY",
    "RMA_EXTRACTION_TIMEOUT_S",
    "RMA_RECORDS_PATH",
    "RMA_EXPORT_DIR",
    "RMA_LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for k in ENV_KEYS:
        monkeypatch.delenv(k, raising=False)


def _write_cfg(tmp_path, text):
    p = tmp_path / "app.yaml"
    p.write_text(text, encoding="utf-8")
    return p


def test_yaml_values_are_loaded(tmp_path):
    cfg = _write_cfg(
        tmp_path,
        f"""
records_path: {tmp_path / 'records.json'}
export_dir: {tmp_path / 'exports'}
log_level: debug
extraction:
  model: gemini-test
  fallback_policy: simulate_on_any_failure
  timeout_s: 12
  simulated_delay_s: 0
normalizer:
  photo: {{max_edge: 640, quality: 0.5}}
draft_defaults:
  customer: Condor
""",
    )
    s = load_settings(str(cfg))
    assert s.gemini_model == "gemini-test"
    assert s.fallback_policy is FallbackPolicy.SIMULATE_ON_ANY_FAILURE
    assert s.extraction_timeout_s == 12.0
    assert s.simulated_delay_s == 0.0
    assert (s.photo_policy.max_edge, s.photo_policy.quality) == (640, 0.5)
    assert (s.label_policy.max_edge, s.label_policy.quality) == (1600, 0.9)
    assert s.records_path == (tmp_path / "records.json").resolve()
    assert s.log_level == "DEBUG"
    assert s.draft_defaults == {"customer": "Condor"}
    assert s.gemini_api_key is None


def test_missing_file_gives_defaults(tmp_path):
    s = load_settings(str(tmp_path / "absent.yaml"))
    assert s.gemini_model == DEFAULT_GEMINI_MODEL
    assert s.fallback_policy is FallbackPolicy.SIMULATE_ON_MISSING_CREDENTIAL
    assert s.extraction_timeout_s == 30.0
    assert s.records_path.name == "rma_records.json"
    assert s.records_path.is_absolute()


def test_env_overrides(tmp_path, monkeypatch):
    cfg = _write_cfg(tmp_path, "extraction:\n  fallback_policy: simulate_on_any_failure\n")
    monkeypatch.setenv("RMA_CONFIG_PATH", str(cfg))
    monkeypatch.setenv("RMA_FALLBACK_POLICY", "LIVE_ONLY")
    monkeypatch.setenv("RMA_EXTRACTION_TIMEOUT_S", "5")
    monkeypatch.setenv("RMA_RECORDS_PATH", str(tmp_path / "other.json"))
    monkeypatch.setenv("GEMINI_API_KEY", "g" * 30)

    s = load_settings()
    assert s.fallback_policy is FallbackPolicy.LIVE_ONLY
    assert s.extraction_timeout_s == 5.0
    assert s.records_path == (tmp_path / "other.json").resolve()
    assert s.gemini_api_key == "g" * 30

    monkeypatch.setenv("RMA_GEMINI_API_KEY", "r" * 30)
    assert load_settings().gemini_api_key == "r" * 30


def test_invalid_values_name_the_config_file(tmp_path):
    bad_policy = _write_cfg(tmp_path, "extraction:\n  fallback_policy: sometimes\n")
    with pytest.raises(ValueError, match="fallback_policy") as e:
        load_settings(str(bad_policy))
    assert str(bad_policy) in str(e.value)

    bad_quality = _write_cfg(tmp_path, "normalizer:\n  label: {quality: 2}\n")
    with pytest.raises(ValueError, match="normalizer.label"):
        load_settings(str(bad_quality))

    bad_timeout = _write_cfg(tmp_path, "extraction:\n  timeout_s: 0\n")
    with pytest.raises(ValueError, match="timeout_s"):
        load_settings(str(bad_timeout))


def test_wiring_picks_tier_from_credential(tmp_path):
    cfg = _write_cfg(tmp_path, f"records_path: {tmp_path / 'r.json'}\n")
    simulated = build_extraction_client(load_settings(str(cfg)))
    assert simulated.tier is Tier.SIMULATED
    assert simulated.service is None

    cfg = _write_cfg(tmp_path, f"records_path: {tmp_path / 'r.json'}\nextraction:\n  api_key: {'k' * 40}\n")
    settings = load_settings(str(cfg))
    live = build_extraction_client(settings)
    assert live.tier is Tier.LIVE
    assert isinstance(live.service, GeminiVisionService)

    store = build_store(settings)
    assert store.path == (tmp_path / "r.json").resolve()

    session = new_session(settings, live)
    assert session.draft.get("customer") == "Bomare Company"
    assert session.config.extraction_timeout_s == 30.0
