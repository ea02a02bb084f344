import csv
from dataclasses import replace
import io

import pytest

from catalog.errors import AuthorizationError, StructuralInputError
from catalog.invalidation import generation_key
from catalog.schemas import ListFilters, SortSpec
from catalog.service import build_service


HEADER = ["record_id", "title", "description", "category", "owner", "duration", "level", "price", "rating", "tags"]


def build_csv(rows: list[dict[str, str]], fieldnames: list[str] = HEADER) -> bytes:
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=fieldnames)
    writer.writeheader()
    for row in rows:
        writer.writerow(row)
    return buffer.getvalue().encode("utf-8")


def row(index: int, **overrides: str) -> dict[str, str]:
    values = {
        "record_id": f"rec-{index}",
        "title": f"Course number {index}",
        "description": f"Description for course number {index}",
        "category": "Programming",
        "owner": "Ada Lovelace",
        "duration": "8",
        "level": "Intermediate",
        "price": "19.5",
        "rating": "4.2",
        "tags": "python, data",
    }
    values.update(overrides)
    return values


def test_missing_title_rejects_only_that_row(service, token) -> None:
    rows = [row(1), row(2), row(3, title=""), row(4), row(5)]

    report = service.ingest_batch(build_csv(rows), token)

    assert report.total_rows == 5
    assert report.valid_rows == 4
    assert report.saved_rows == 4
    assert report.row_errors == ["Row 3: Missing required fields: title"]
    assert [record.record_id for record in report.saved_records] == ["REC-1", "REC-2", "REC-4", "REC-5"]


def test_saved_records_are_normalized(service, token) -> None:
    report = service.ingest_batch(
        build_csv([row(1, category="devops", level="guru", rating="7", tags="Docker; K8s")]), token
    )

    record = report.saved_records[0]
    assert record.category == "DevOps"
    assert record.level == "Beginner"
    assert record.rating == 5.0
    assert record.tags == ["docker", "k8s"]
    assert record.price == 19.5
    assert record.status == "published"
    assert record.created_at is not None


def test_partial_failure_counts_missing_fields_and_duplicates(service, token) -> None:
    rows = [
        row(1),
        row(2, owner=""),
        row(3),
        row(1, title="Duplicate of the first row"),
        row(5, description="", duration=""),
        row(6),
    ]

    report = service.ingest_batch(build_csv(rows), token)

    assert report.total_rows == 6
    assert report.valid_rows == 4
    assert report.saved_rows == 3
    assert report.row_errors == [
        "Row 2: Missing required fields: owner",
        "Row 4: Record with ID REC-1 already exists",
        "Row 5: Missing required fields: description, duration",
    ]


def test_store_level_validation_failure_is_a_row_error(service, token) -> None:
    rows = [row(1, title="ab"), row(2, duration="not a number"), row(3)]

    report = service.ingest_batch(build_csv(rows), token)

    assert report.valid_rows == 3
    assert report.saved_rows == 1
    assert report.row_errors == [
        "Row 1: title must be between 3 and 200 characters",
        "Row 2: duration must be between 1 and 1000",
    ]


def test_batch_where_every_row_fails_still_returns_report(service, token) -> None:
    rows = [row(1, title="", owner=""), row(2, category="")]

    report = service.ingest_batch(build_csv(rows), token)

    assert report.saved_rows == 0
    assert report.valid_rows == 0
    assert report.row_errors == [
        "Row 1: Missing required fields: title, owner",
        "Row 2: Missing required fields: category",
    ]


def test_duplicate_against_existing_store_record(service, token) -> None:
    service.ingest_batch(build_csv([row(1)]), token)

    report = service.ingest_batch(build_csv([row(1), row(2)]), token)

    assert report.saved_rows == 1
    assert report.row_errors == ["Row 1: Record with ID REC-1 already exists"]


@pytest.mark.parametrize("payload", [b"", b"title,description,category,owner,duration\n"])
def test_empty_upload_is_a_structural_error(service, token, payload: bytes) -> None:
    with pytest.raises(StructuralInputError):
        service.ingest_batch(payload, token)


def test_malformed_upload_aborts_before_touching_store(service, store, token) -> None:
    payload = build_csv([row(1), row(2)]) + b'rec-3,"never closed,desc,Programming,Ada,3\n'

    with pytest.raises(StructuralInputError):
        service.ingest_batch(payload, token)

    _, total = store.list_page(ListFilters(), SortSpec(), page=1, page_size=10)
    assert total == 0


def test_ingest_requires_authorization(service, store) -> None:
    with pytest.raises(AuthorizationError):
        service.ingest_batch(build_csv([row(1)]), "wrong-token")
    with pytest.raises(AuthorizationError):
        service.ingest_batch(build_csv([row(1)]), None)

    assert store.get("REC-1") is None


def test_index_outage_does_not_retract_saved_rows(service, index, store, token) -> None:
    index.available = False

    report = service.ingest_batch(build_csv([row(1), row(2)]), token)

    assert report.saved_rows == 2
    assert report.row_errors == []
    assert store.get("REC-1") is not None
    assert index.document_ids() == set()

    index.available = True
    service.resync_index()
    assert index.document_ids() == {"REC-1", "REC-2"}


def test_ingested_records_are_indexed_and_listed(service, index, token) -> None:
    service.ingest_batch(build_csv([row(1), row(2)]), token)

    assert index.document_ids() == {"REC-1", "REC-2"}
    listed = service.list_records()
    assert listed.data["pagination"]["total_items"] == 2


def test_invalidation_runs_once_per_batch(service, cache, token) -> None:
    service.ingest_batch(build_csv([row(index) for index in range(1, 6)]), token)

    assert cache.incremented.count(generation_key("list")) == 1
    assert cache.incremented.count(generation_key("search")) == 1
    assert cache.incremented.count(generation_key("stats")) == 1
    assert generation_key("record:REC-3") in cache.incremented


def test_batch_with_no_saved_rows_skips_invalidation(service, cache, token) -> None:
    service.ingest_batch(build_csv([row(1, title="")]), token)

    assert cache.incremented == []


def test_out_of_range_numbers_reject_only_that_row(service, token) -> None:
    fieldnames = HEADER + ["popularity"]
    rows = [row(1, popularity="5"), row(2, popularity="1e19"), row(3, popularity="7", price="5000000"), row(4)]

    report = service.ingest_batch(build_csv(rows, fieldnames), token)

    assert report.total_rows == 4
    assert report.saved_rows == 2
    assert report.row_errors == [
        "Row 2: popularity cannot exceed 2147483647",
        "Row 3: price cannot exceed 1000000",
    ]
    assert [record.record_id for record in report.saved_records] == ["REC-1", "REC-4"]


def test_store_failure_on_one_row_does_not_abort_batch(service, store, token, monkeypatch) -> None:
    original_create = store.create

    def create(record):
        if record.record_id == "REC-2":
            raise OverflowError("Python int too large to convert to SQLite INTEGER")
        return original_create(record)

    monkeypatch.setattr(store, "create", create)

    report = service.ingest_batch(build_csv([row(1), row(2), row(3)]), token)

    assert report.saved_rows == 2
    assert report.row_errors == ["Row 2: Record could not be stored"]
    assert store.get("REC-3") is not None


def test_upload_over_size_limit_is_rejected(test_settings, store, cache, index, token) -> None:
    service = build_service(replace(test_settings, max_upload_bytes=128), store=store, cache=cache, index=index)
    payload = build_csv([row(number) for number in range(1, 6)])
    assert len(payload) > 128

    with pytest.raises(StructuralInputError):
        service.ingest_batch(io.BytesIO(payload), token)
    with pytest.raises(StructuralInputError):
        service.ingest_batch(payload, token)

    assert store.get("REC-1") is None
