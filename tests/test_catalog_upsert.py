"""Tests for the JSON document store and for applying a diff to it.

Each test gets its own data directory so stored state is fully visible.
"""

from __future__ import annotations

import json
from datetime import datetime

import pytest

from catalog_diff import apply_catalog_diff, diff_catalog
from catalog_parser import Thresholds, VehicleRecord, compute_content_hash
from vehicle_store import (
    CATALOG_COLLECTION,
    DocumentStore,
    StorageError,
    get_stored_vehicle,
    get_vehicle_by_id,
    list_vehicles,
    load_catalog,
)

FIRST_IMPORT = datetime(2026, 3, 1, 8, 0, 0)
SECOND_IMPORT = datetime(2026, 4, 1, 8, 0, 0)


def _vehicle(car_id: str, *, yellow: float = 2.0, tank: float | None = 300.0) -> VehicleRecord:
    record = VehicleRecord(
        car_id=car_id,
        chassis_type="CONVENCIONAL",
        thresholds=Thresholds(yellow=yellow, green=yellow + 0.1, gold=yellow + 0.2),
        tank_capacity=tank,
    )
    record.content_hash = compute_content_hash(record)
    return record


def _catalog(*records: VehicleRecord) -> dict[str, VehicleRecord]:
    return {record.car_id: record for record in records}


def _commit(store: DocumentStore, next_catalog: dict[str, VehicleRecord], now: datetime) -> dict[str, int]:
    diff = diff_catalog(load_catalog(store), next_catalog)
    return apply_catalog_diff(store, diff, now=now)


@pytest.fixture
def store(tmp_path) -> DocumentStore:
    return DocumentStore(str(tmp_path / "data"))


def test_missing_collection_loads_as_empty(store: DocumentStore) -> None:
    assert store.load_collection(CATALOG_COLLECTION) == {}
    assert load_catalog(store) == {}


def test_upsert_keeps_other_documents_and_writes_counters(store: DocumentStore) -> None:
    store.upsert("colecao", "1", {"valor": 1})
    store.upsert("colecao", "2", {"valor": 2})
    store.upsert("colecao", "1", {"valor": 10})

    with open(store.collection_path("colecao"), encoding="utf-8") as handle:
        raw = json.load(handle)

    assert raw["documentos"] == {"1": {"valor": 10}, "2": {"valor": 2}}
    assert raw["_total_count"] == 2
    assert "_updated_at" in raw
    assert store.get("colecao", "2") == {"valor": 2}
    assert store.get("colecao", "3") is None


@pytest.mark.parametrize("content", ["{nao e json", '{"documentos": []}'])
def test_corrupt_collection_raises_storage_error(store: DocumentStore, content: str) -> None:
    path = store.collection_path(CATALOG_COLLECTION)
    store.upsert(CATALOG_COLLECTION, "1", {})
    with open(path, "w", encoding="utf-8") as handle:
        handle.write(content)

    with pytest.raises(StorageError):
        load_catalog(store)


def test_first_import_creates_active_records(store: DocumentStore) -> None:
    summary = _commit(store, _catalog(_vehicle("101"), _vehicle("205")), FIRST_IMPORT)

    assert summary == {"added": 2, "changed": 0, "inactivated": 0}
    stored = load_catalog(store)
    assert set(stored) == {"101", "205"}
    assert all(record.status == "active" for record in stored.values())
    assert stored["101"].updated_at == FIRST_IMPORT.isoformat()


def test_omitted_vehicle_is_soft_deleted(store: DocumentStore) -> None:
    """Scenario: `205` disappears from the upload and becomes inactive, not deleted."""
    _commit(store, _catalog(_vehicle("101"), _vehicle("205", yellow=1.8, tank=None)), FIRST_IMPORT)

    summary = _commit(store, _catalog(_vehicle("101")), SECOND_IMPORT)

    assert summary == {"added": 0, "changed": 0, "inactivated": 1}
    assert get_vehicle_by_id(store, "205") is None
    retained = get_stored_vehicle(store, "205")
    assert retained is not None
    assert retained.status == "inactive"
    assert retained.thresholds.yellow == 1.8
    assert retained.tank_capacity is None
    assert retained.updated_at == SECOND_IMPORT.isoformat()
    assert [record.car_id for record in list_vehicles(store)] == ["101"]
    assert [record.car_id for record in list_vehicles(store, include_inactive=True)] == ["101", "205"]


def test_reintroduced_vehicle_is_reactivated(store: DocumentStore) -> None:
    _commit(store, _catalog(_vehicle("101"), _vehicle("205")), FIRST_IMPORT)
    _commit(store, _catalog(_vehicle("101")), FIRST_IMPORT)

    summary = _commit(store, _catalog(_vehicle("101"), _vehicle("205")), SECOND_IMPORT)

    assert summary == {"added": 0, "changed": 1, "inactivated": 0}
    reactivated = get_vehicle_by_id(store, "205")
    assert reactivated is not None
    assert reactivated.status == "active"


def test_changed_vehicle_overwrites_stored_fields(store: DocumentStore) -> None:
    _commit(store, _catalog(_vehicle("101", yellow=2.0)), FIRST_IMPORT)

    summary = _commit(store, _catalog(_vehicle("101", yellow=2.6)), SECOND_IMPORT)

    assert summary["changed"] == 1
    stored = get_vehicle_by_id(store, "101")
    assert stored is not None
    assert stored.thresholds.yellow == 2.6
    assert stored.updated_at == SECOND_IMPORT.isoformat()


def test_applying_the_same_diff_twice_leaves_identical_state(store: DocumentStore) -> None:
    _commit(store, _catalog(_vehicle("101"), _vehicle("205"), _vehicle("306")), FIRST_IMPORT)
    diff = diff_catalog(load_catalog(store), _catalog(_vehicle("101", yellow=2.4), _vehicle("410")))

    apply_catalog_diff(store, diff, now=SECOND_IMPORT)
    after_once = store.load_collection(CATALOG_COLLECTION)
    apply_catalog_diff(store, diff, now=datetime(2026, 5, 1))
    after_twice = store.load_collection(CATALOG_COLLECTION)

    assert after_twice == after_once
    assert after_once["205"]["status"] == "inactive"
    assert after_once["410"]["status"] == "active"


def test_already_inactive_vehicle_keeps_its_timestamp(store: DocumentStore) -> None:
    _commit(store, _catalog(_vehicle("101"), _vehicle("205")), FIRST_IMPORT)
    _commit(store, _catalog(_vehicle("101")), SECOND_IMPORT)

    summary = _commit(store, _catalog(_vehicle("101")), datetime(2026, 5, 1))

    assert summary["inactivated"] == 1
    assert get_stored_vehicle(store, "205").updated_at == SECOND_IMPORT.isoformat()


def test_lookup_strips_non_digits(store: DocumentStore) -> None:
    _commit(store, _catalog(_vehicle("10570")), FIRST_IMPORT)

    assert get_vehicle_by_id(store, "CAR-10570").car_id == "10570"
    assert get_vehicle_by_id(store, "abc") is None
    assert get_vehicle_by_id(store, "999") is None


def test_soft_delete_keeps_extra_keys_of_stored_document(store: DocumentStore) -> None:
    stored = _vehicle("205").to_dict()
    stored["observacao"] = "em reforma"
    store.upsert(CATALOG_COLLECTION, "205", stored)

    summary = _commit(store, _catalog(_vehicle("101")), SECOND_IMPORT)

    assert summary["inactivated"] == 1
    document = store.get(CATALOG_COLLECTION, "205")
    assert document["observacao"] == "em reforma"
    assert document["status"] == "inactive"
    assert document["updatedAt"] == SECOND_IMPORT.isoformat()
    assert document["thresholds"] == stored["thresholds"]


def test_unknown_stored_status_is_not_served_and_is_repaired(store: DocumentStore) -> None:
    stored = _vehicle("205").to_dict()
    stored["status"] = "arquivado"
    store.upsert(CATALOG_COLLECTION, "205", stored)

    assert get_vehicle_by_id(store, "205") is None
    assert list_vehicles(store) == []

    summary = _commit(store, _catalog(_vehicle("205")), SECOND_IMPORT)

    assert summary == {"added": 0, "changed": 1, "inactivated": 0}
    assert get_vehicle_by_id(store, "205").status == "active"


def test_upsert_many_merge_only_replaces_sent_keys(store: DocumentStore) -> None:
    store.upsert("colecao", "1", {"valor": 1, "extra": "x"})

    store.upsert_many("colecao", {"1": {"valor": 2}}, merge=True)
    assert store.get("colecao", "1") == {"valor": 2, "extra": "x"}

    store.upsert_many("colecao", {"1": {"valor": 3}})
    assert store.get("colecao", "1") == {"valor": 3}
