from __future__ import annotations

import base64
import random

import pytest

from services.extraction.client import (
    FACTORY_LABEL_KEYS,
    NO_DESCRIPTION,
    OC_LABEL_KEYS,
    OC_LABEL_SCHEMA,
    SIMULATED_DESCRIPTION,
    SIMULATED_POOLS,
    ExtractionClient,
    ExtractionConfig,
    FallbackPolicy,
    Tier,
    has_valid_credential,
)
from services.extraction.errors import MissingCredential, ServiceUnreachable, UnparseableResponse
from services.records.domain import DEFECT_CATEGORIES

VALID_KEY = "AIza" + "x" * 35
PNG_BYTES = b"\x89PNG\r\n\x1a\nfake"
PNG_URL = "data:image/png;base64," + base64.b64encode(PNG_BYTES).decode("ascii")


class FakeService:
    def __init__(self, text="", exc=None):
        self.text = text
        self.exc = exc
        self.calls = []

    def generate(self, image_bytes, mime_type, instruction, json_schema=None):
        self.calls.append(
            {"image_bytes": image_bytes, "mime_type": mime_type, "instruction": instruction, "schema": json_schema}
        )
        if self.exc is not None:
            raise self.exc
        return self.text


class SleepRecorder:
    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)


def _client(service=None, api_key=VALID_KEY, policy=FallbackPolicy.SIMULATE_ON_MISSING_CREDENTIAL, delay=0.8):
    sleep = SleepRecorder()
    client = ExtractionClient(
        service=service,
        api_key=api_key,
        config=ExtractionConfig(policy=policy, simulated_delay_s=delay),
        rng=random.Random(7),
        sleep=sleep,
    )
    return client, sleep


@pytest.mark.parametrize(
    "key,expected",
    [(None, False), ("", False), ("   ", False), ("x" * 19, False), (" " + "x" * 19 + " ", False), ("x" * 20, True)],
)
def test_credential_threshold(key, expected):
    assert has_valid_credential(key) is expected


def test_tier_selection():
    assert _client(FakeService())[0].tier is Tier.LIVE
    assert _client(FakeService(), api_key="short")[0].tier is Tier.SIMULATED
    assert _client(None)[0].tier is Tier.SIMULATED


# --- Live tier ---
def test_live_oc_label_sends_declared_mime_and_schema():
    svc = FakeService(
        '```json\n{"oc_serial_number": "TA5144B1200345", "wc": "2505", '
        '"model_pn": "ST3151A07-2", "ver": "Ver.2.9", "barcode": "ignored"}\n```'
    )
    client, sleep = _client(svc)

    out = client.extract_oc_label(PNG_URL)

    assert out == {"oc_serial_number": "TA5144B1200345", "wc": "2505", "model_pn": "ST3151A07-2", "ver": "Ver.2.9"}
    call = svc.calls[0]
    assert call["mime_type"] == "image/png"
    assert call["image_bytes"] == PNG_BYTES
    assert call["schema"] == OC_LABEL_SCHEMA
    assert sleep.calls == []


def test_live_factory_label_unparseable_returns_empty_fields():
    client, _ = _client(FakeService("I could not find a label."))
    assert client.extract_factory_label(PNG_URL) == {k: "" for k in FACTORY_LABEL_KEYS}


def test_live_category_matches_closed_set():
    client, _ = _client(FakeService("It is a bright dot defect."))
    assert client.detect_defect_category(PNG_URL) == {"defect_description": "Bright Dot"}

    client, _ = _client(FakeService("Unclear."))
    assert client.detect_defect_category(PNG_URL) == {"defect_description": "Abnormal Display"}


def test_live_analysis_is_trimmed_and_conditioned_on_notes():
    svc = FakeService("  Thin vertical line at column 512.  ")
    client, _ = _client(svc)
    assert client.analyze_defect(PNG_URL, existing_notes="flickers when warm") == "Thin vertical line at column 512."
    assert "flickers when warm" in svc.calls[0]["instruction"]
    assert svc.calls[0]["schema"] is None


def test_live_empty_analysis_gets_placeholder():
    client, _ = _client(FakeService("   "))
    assert client.analyze_defect(PNG_URL) == NO_DESCRIPTION


# --- Simulated tier ---
def test_missing_credential_simulates_without_calling_service():
    svc = FakeService("should not be used")
    client, sleep = _client(svc, api_key="")

    oc = client.extract_oc_label(PNG_URL)
    factory = client.extract_factory_label(PNG_URL)
    category = client.detect_defect_category(PNG_URL)

    assert set(oc) == set(OC_LABEL_KEYS)
    assert set(factory) == set(FACTORY_LABEL_KEYS)
    for k, v in {**oc, **factory}.items():
        assert v in SIMULATED_POOLS[k]
    assert category["defect_description"] in DEFECT_CATEGORIES
    assert client.analyze_defect(PNG_URL) == SIMULATED_DESCRIPTION
    assert svc.calls == []
    assert sleep.calls == [0.8, 0.8, 0.8, 0.8]


def test_simulated_values_are_reproducible_with_seeded_rng():
    a, _ = _client(None, api_key=None)
    b, _ = _client(None, api_key=None)
    assert a.extract_oc_label(PNG_URL) == b.extract_oc_label(PNG_URL)


def test_zero_delay_skips_sleep():
    client, sleep = _client(None, api_key=None, delay=0)
    client.extract_factory_label(PNG_URL)
    assert sleep.calls == []


def test_live_only_refuses_to_simulate():
    client, sleep = _client(None, api_key=None, policy=FallbackPolicy.LIVE_ONLY)
    with pytest.raises(MissingCredential):
        client.extract_oc_label(PNG_URL)
    assert sleep.calls == []


# --- Failed live call ---
@pytest.mark.parametrize("policy", [FallbackPolicy.LIVE_ONLY, FallbackPolicy.SIMULATE_ON_MISSING_CREDENTIAL])
def test_live_failure_propagates(policy):
    client, _ = _client(FakeService(exc=ServiceUnreachable("HTTP 503")), policy=policy)
    with pytest.raises(ServiceUnreachable):
        client.extract_oc_label(PNG_URL)
    with pytest.raises(ServiceUnreachable):
        client.analyze_defect(PNG_URL)


def test_live_failure_simulates_under_any_failure_policy():
    client, sleep = _client(FakeService(exc=ServiceUnreachable("timeout")), policy=FallbackPolicy.SIMULATE_ON_ANY_FAILURE)
    out = client.extract_factory_label(PNG_URL)
    assert all(out[k] in SIMULATED_POOLS[k] for k in FACTORY_LABEL_KEYS)
    assert sleep.calls == [0.8]


def test_malformed_image_url_is_unparseable_and_never_sent():
    service = FakeService(text="Line at col 512.")
    client, _ = _client(service)
    with pytest.raises(UnparseableResponse):
        client.analyze_defect("data:image/jpeg;base64,@@bad@@")
    assert service.calls == []
