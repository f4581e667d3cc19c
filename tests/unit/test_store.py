from __future__ import annotations

import json

import pytest

from services.records.domain import RMARecord, RMAStatus
from services.records.store import LocalRecordStore, search_records


def _rec(rid, **fields):
    return RMARecord(id=rid, created_at="2025-01-01T00:00:00+00:00", fields=fields)


def test_empty_store(tmp_path):
    store = LocalRecordStore(tmp_path / "nested" / "records.json")
    assert store.list() == []
    assert store.next_id() == "1"
    assert store.get("1") is None


def test_upsert_prepends_new_and_replaces_existing(tmp_path):
    store = LocalRecordStore(tmp_path / "records.json")
    store.upsert(_rec("1", model_pn="A"))
    store.upsert(_rec("2", model_pn="B"))
    assert [r.id for r in store.list()] == ["2", "1"]
    assert store.next_id() == "3"

    store.upsert(_rec("1", model_pn="A2"))
    assert [r.id for r in store.list()] == ["2", "1"]
    assert store.get("1").get("model_pn") == "A2"


def test_delete(tmp_path):
    store = LocalRecordStore(tmp_path / "records.json")
    store.upsert(_rec("1"))
    assert store.delete("1") is True
    assert store.delete("1") is False
    assert store.list() == []


def test_file_layout_and_no_temp_leftovers(tmp_path):
    path = tmp_path / "records.json"
    store = LocalRecordStore(path)
    store.upsert(_rec("1", oc_serial_number="TA5144"))

    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["records"][0]["id"] == "1"
    assert data["records"][0]["oc_serial_number"] == "TA5144"
    assert data["records"][0]["images"] == {"defect_symptom": None, "factory_batch": None, "oc_serial": None}
    assert [p.name for p in tmp_path.iterdir()] == ["records.json"]


def test_next_id_ignores_non_numeric_ids(tmp_path):
    store = LocalRecordStore(tmp_path / "records.json")
    store.upsert(_rec("legacy-a"))
    store.upsert(_rec("9"))
    assert store.next_id() == "10"


def test_search_records():
    records = [
        _rec("1", oc_serial_number="TA5144B1200345", customer="Bomare Company", model_pn="ST3151A07-2"),
        _rec("2", oc_serial_number="1500258A0917", customer="Condor", model_pn="CV500U5-L04"),
    ]
    assert [r.id for r in search_records(records, "ta5144")] == ["1"]
    assert [r.id for r in search_records(records, "condor")] == ["2"]
    assert [r.id for r in search_records(records, "cv500")] == ["2"]
    assert [r.id for r in search_records(records, "2")] == ["1", "2"]
    assert len(search_records(records, "  ")) == 2


def test_record_from_dict_rejects_bad_status_and_slots():
    with pytest.raises(ValueError):
        RMARecord.from_dict({"id": "1", "status": "SHIPPED"})
    with pytest.raises(ValueError):
        RMARecord.from_dict({"id": "1", "images": {"front": None}})


def test_record_from_dict_fills_missing_fields():
    r = RMARecord.from_dict({"id": 3, "status": "APPROVED", "model_pn": "X"})
    assert r.id == "3"
    assert r.status is RMAStatus.APPROVED
    assert r.get("model_pn") == "X"
    assert r.get("remark") == ""
