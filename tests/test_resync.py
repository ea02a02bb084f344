from dataclasses import replace

from catalog.db_models import utc_now
from catalog.resync import resync_index
from catalog.validation import build_record, normalize_fields


def _save(store, make_fields, **overrides):
    return store.create(build_record(normalize_fields(make_fields(**overrides)), utc_now()))


def test_resync_restores_records_missing_from_index(store, index, make_fields) -> None:
    for number in range(1, 4):
        _save(store, make_fields, record_id=f"rec-{number}")
    _save(store, make_fields, record_id="draft-1", status="draft")

    result = resync_index(store, index, batch_size=2)

    assert result.indexed == 3
    assert result.removed == 0
    assert result.skipped is False
    assert index.document_ids() == {"REC-1", "REC-2", "REC-3"}


def test_resync_is_idempotent(store, index, make_fields) -> None:
    _save(store, make_fields, record_id="rec-1")

    first = resync_index(store, index)
    second = resync_index(store, index)

    assert first == second
    assert index.document_ids() == {"REC-1"}


def test_resync_removes_documents_no_longer_published(store, index, make_fields) -> None:
    record = _save(store, make_fields, record_id="rec-1")
    index.upsert(record)
    store.replace(replace(record, status="archived"))

    result = resync_index(store, index)

    assert result.removed == 1
    assert index.document_ids() == set()


def test_resync_skips_cycle_when_index_is_down(store, index, make_fields) -> None:
    _save(store, make_fields, record_id="rec-1")
    index.available = False

    result = resync_index(store, index)

    assert result.skipped is True
    assert result.indexed == 0

    index.available = True
    assert resync_index(store, index).indexed == 1
    assert index.document_ids() == {"REC-1"}


def test_service_resync_uses_configured_batch_size(service, store, index, make_fields) -> None:
    for number in range(1, 4):
        _save(store, make_fields, record_id=f"rec-{number}")

    result = service.resync_index()

    assert result.indexed == 3
    assert index.document_ids() == {"REC-1", "REC-2", "REC-3"}
