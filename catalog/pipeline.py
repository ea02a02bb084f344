import logging
from typing import BinaryIO

from sqlalchemy.exc import SQLAlchemyError

from catalog.auth import Authorizer
from catalog.config import Settings
from catalog.db_models import utc_now
from catalog.errors import ConflictError, RecordValidationError, RowValidationError
from catalog.invalidation import InvalidationCoordinator
from catalog.record_store import RecordStore
from catalog.retry import RetryExhaustedError, run_with_retries
from catalog.schemas import CatalogRecord, IngestionReport
from catalog.search import SearchIndex
from catalog.validation import build_record, check_record, missing_required_fields, normalize_fields, parse_upload


logger = logging.getLogger(__name__)


class IngestionPipeline:
    def __init__(
        self,
        settings: Settings,
        store: RecordStore,
        index: SearchIndex,
        invalidation: InvalidationCoordinator,
        authorizer: Authorizer,
    ) -> None:
        self.settings = settings
        self.store = store
        self.index = index
        self.invalidation = invalidation
        self.authorizer = authorizer

    def ingest_batch(self, byte_stream: bytes | BinaryIO, auth_token: str | None) -> IngestionReport:
        self.authorizer.authorize(auth_token)
        rows = parse_upload(byte_stream, max_bytes=self.settings.max_upload_bytes)

        report = IngestionReport(total_rows=len(rows))
        logger.info("ingestion started", extra={"total_rows": report.total_rows})

        try:
            for row_number, row in enumerate(rows, start=1):
                try:
                    fields = self._validate_row(row_number, row)
                    report.valid_rows += 1
                    record = self._save_row(row_number, fields)
                except RowValidationError as exc:
                    logger.info("row rejected", extra={"row_number": row_number, "reason": exc.reason})
                    report.row_errors.append(str(exc))
                    continue

                report.saved_rows += 1
                report.saved_records.append(record)
                self._index(record)
        finally:
            # One invalidation per batch, even when the call is interrupted
            # after some rows have committed.
            if report.saved_records:
                self.invalidation.after_mutation(record.record_id for record in report.saved_records)

        logger.info(
            "ingestion finished",
            extra={
                "total_rows": report.total_rows,
                "valid_rows": report.valid_rows,
                "saved_rows": report.saved_rows,
                "rejected_rows": len(report.row_errors),
            },
        )
        return report

    def create_record(self, fields: dict[str, object], auth_token: str | None) -> CatalogRecord:
        self.authorizer.authorize(auth_token)
        missing = missing_required_fields(fields)
        if missing:
            raise RecordValidationError([f"Missing required fields: {', '.join(missing)}"])

        record = build_record(normalize_fields(fields), utc_now())
        saved = self.store.create(record)
        self._index(saved)
        self.invalidation.after_mutation([saved.record_id])
        logger.info("record created", extra={"record_id": saved.record_id})
        return saved

    def replace_record(self, record_id: str, fields: dict[str, object], auth_token: str | None) -> CatalogRecord:
        self.authorizer.authorize(auth_token)
        missing = missing_required_fields(fields)
        if missing:
            raise RecordValidationError([f"Missing required fields: {', '.join(missing)}"])

        normalized = normalize_fields(fields)
        normalized["record_id"] = record_id.strip().upper()
        check_record(normalized)

        updated = self.store.replace(CatalogRecord(**normalized))
        if updated.is_published:
            self._index(updated)
        else:
            self._unindex(updated.record_id)
        self.invalidation.after_mutation([updated.record_id])
        logger.info("record replaced", extra={"record_id": updated.record_id, "status": updated.status})
        return updated

    def delete_record(self, record_id: str, auth_token: str | None) -> CatalogRecord:
        self.authorizer.authorize(auth_token)
        deleted = self.store.delete(record_id)
        self._unindex(deleted.record_id)
        self.invalidation.after_mutation([deleted.record_id])
        logger.info("record deleted", extra={"record_id": deleted.record_id})
        return deleted

    def _validate_row(self, row_number: int, row: dict[str, str]) -> dict[str, object]:
        missing = missing_required_fields(row)
        if missing:
            raise RowValidationError(row_number, f"Missing required fields: {', '.join(missing)}")
        fields = normalize_fields(row)
        # Uploaded ratings above the scale are capped; single writes reject them.
        fields["rating"] = min(fields["rating"], 5.0)
        return fields

    def _save_row(self, row_number: int, fields: dict[str, object]) -> CatalogRecord:
        try:
            return self.store.create(build_record(fields, utc_now()))
        except (ConflictError, RecordValidationError) as exc:
            raise RowValidationError(row_number, str(exc)) from exc
        except (SQLAlchemyError, OverflowError) as exc:
            logger.warning("row could not be stored", extra={"row_number": row_number, "error": str(exc)})
            raise RowValidationError(row_number, "Record could not be stored") from exc

    def _index(self, record: CatalogRecord) -> None:
        self._best_effort(lambda: self.index.upsert(record), action="index", record_id=record.record_id)

    def _unindex(self, record_id: str) -> None:
        self._best_effort(lambda: self.index.remove(record_id), action="unindex", record_id=record_id)

    def _best_effort(self, fn, *, action: str, record_id: str) -> None:
        # The store write has already committed; the resync sweep repairs the index.
        try:
            run_with_retries(
                fn,
                action=f"{action} {record_id}",
                max_retries=self.settings.max_index_retries,
                backoff_seconds=self.settings.retry_backoff_seconds,
            )
        except RetryExhaustedError as exc:
            logger.warning("search index write deferred to resync", extra={"record_id": record_id, "error": str(exc)})
