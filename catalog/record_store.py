from collections.abc import Iterator
import logging

from sqlalchemy import String, cast, func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from catalog.db_models import CatalogRecordRow, utc_now
from catalog.errors import ConflictError, NotFoundError
from catalog.schemas import PUBLISHED, SORT_FIELDS, CatalogRecord, ListFilters, SortSpec


logger = logging.getLogger(__name__)

_MUTABLE_COLUMNS = (
    "title",
    "description",
    "category",
    "owner",
    "duration_units",
    "level",
    "price",
    "popularity_count",
    "rating",
    "tags",
    "prerequisites",
    "outcomes",
    "thumbnail_url",
    "status",
)


def _to_record(row: CatalogRecordRow) -> CatalogRecord:
    return CatalogRecord(
        record_id=row.record_id,
        title=row.title,
        description=row.description,
        category=row.category,
        owner=row.owner,
        duration_units=row.duration_units,
        level=row.level,
        price=row.price,
        popularity_count=row.popularity_count,
        rating=row.rating,
        tags=list(row.tags or []),
        prerequisites=list(row.prerequisites or []),
        outcomes=list(row.outcomes or []),
        thumbnail_url=row.thumbnail_url,
        status=row.status,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _contains(column, term: str):
    return func.lower(column).contains(term.lower(), autoescape=True)


def _filter_conditions(filters: ListFilters) -> list:
    conditions = [CatalogRecordRow.status == filters.status]
    if filters.category:
        conditions.append(CatalogRecordRow.category == filters.category)
    if filters.owner:
        conditions.append(_contains(CatalogRecordRow.owner, filters.owner))
    if filters.level:
        conditions.append(CatalogRecordRow.level == filters.level)
    if filters.text:
        conditions.append(
            or_(
                _contains(CatalogRecordRow.title, filters.text),
                _contains(CatalogRecordRow.description, filters.text),
                _contains(CatalogRecordRow.owner, filters.text),
                _contains(cast(CatalogRecordRow.tags, String), filters.text),
            )
        )
    return conditions


def _rounded(value: float | None, digits: int) -> float:
    return round(float(value), digits) if value is not None else 0.0


class RecordStore:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory

    def ping(self) -> bool:
        try:
            with self.session_factory() as db:
                db.execute(select(1))
        except SQLAlchemyError as exc:
            logger.warning("record store ping failed", extra={"error": str(exc)})
            return False
        return True

    def create(self, record: CatalogRecord) -> CatalogRecord:
        now = utc_now()
        row = CatalogRecordRow(
            record_id=record.record_id,
            created_at=record.created_at or now,
            updated_at=record.updated_at or now,
            **{name: getattr(record, name) for name in _MUTABLE_COLUMNS},
        )
        with self.session_factory() as db:
            db.add(row)
            try:
                db.commit()
            except IntegrityError as exc:
                # The unique record_id constraint is the only arbiter of duplicates.
                db.rollback()
                raise ConflictError(record.record_id) from exc
            db.refresh(row)
            return _to_record(row)

    def get(self, record_id: str) -> CatalogRecord | None:
        stmt = select(CatalogRecordRow).where(CatalogRecordRow.record_id == record_id.strip().upper())
        with self.session_factory() as db:
            row = db.execute(stmt).scalar_one_or_none()
            return _to_record(row) if row else None

    def replace(self, record: CatalogRecord) -> CatalogRecord:
        stmt = select(CatalogRecordRow).where(CatalogRecordRow.record_id == record.record_id)
        with self.session_factory() as db:
            row = db.execute(stmt).scalar_one_or_none()
            if row is None:
                raise NotFoundError(record.record_id)
            for name in _MUTABLE_COLUMNS:
                setattr(row, name, getattr(record, name))
            row.updated_at = utc_now()
            db.commit()
            db.refresh(row)
            return _to_record(row)

    def delete(self, record_id: str) -> CatalogRecord:
        stmt = select(CatalogRecordRow).where(CatalogRecordRow.record_id == record_id.strip().upper())
        with self.session_factory() as db:
            row = db.execute(stmt).scalar_one_or_none()
            if row is None:
                raise NotFoundError(record_id)
            record = _to_record(row)
            db.delete(row)
            db.commit()
            return record

    def list_page(
        self,
        filters: ListFilters,
        sort: SortSpec,
        *,
        page: int,
        page_size: int,
    ) -> tuple[list[CatalogRecord], int]:
        conditions = _filter_conditions(filters)
        sort_column = getattr(CatalogRecordRow, sort.field if sort.field in SORT_FIELDS else "created_at")
        if sort.order == "asc":
            ordering = (sort_column.asc(), CatalogRecordRow.record_id.asc())
        else:
            ordering = (sort_column.desc(), CatalogRecordRow.record_id.desc())

        stmt = (
            select(CatalogRecordRow)
            .where(*conditions)
            .order_by(*ordering)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        count_stmt = select(func.count(CatalogRecordRow.id)).where(*conditions)

        with self.session_factory() as db:
            rows = db.execute(stmt).scalars().all()
            total = db.execute(count_stmt).scalar_one()
            return [_to_record(row) for row in rows], total

    def iter_batches(self, *, published: bool, batch_size: int) -> Iterator[list[CatalogRecord]]:
        if published:
            condition = CatalogRecordRow.status == PUBLISHED
        else:
            condition = CatalogRecordRow.status != PUBLISHED

        last_id = 0
        while True:
            stmt = (
                select(CatalogRecordRow)
                .where(condition, CatalogRecordRow.id > last_id)
                .order_by(CatalogRecordRow.id)
                .limit(batch_size)
            )
            with self.session_factory() as db:
                rows = db.execute(stmt).scalars().all()
                batch = [_to_record(row) for row in rows]
            if not rows:
                return
            last_id = rows[-1].id
            yield batch

    def statistics(self) -> dict[str, object]:
        overview_stmt = select(
            func.count(CatalogRecordRow.id),
            func.coalesce(func.sum(CatalogRecordRow.popularity_count), 0),
            func.avg(CatalogRecordRow.rating),
            func.avg(CatalogRecordRow.duration_units),
            func.avg(CatalogRecordRow.price),
        )
        record_count = func.count(CatalogRecordRow.id)
        category_stmt = (
            select(
                CatalogRecordRow.category,
                record_count,
                func.coalesce(func.sum(CatalogRecordRow.popularity_count), 0),
                func.avg(CatalogRecordRow.rating),
            )
            .group_by(CatalogRecordRow.category)
            .order_by(record_count.desc(), CatalogRecordRow.category)
        )

        with self.session_factory() as db:
            count, total_popularity, avg_rating, avg_duration, avg_price = db.execute(overview_stmt).one()
            categories = db.execute(category_stmt).all()

        return {
            "overview": {
                "count": count,
                "total_popularity": int(total_popularity),
                "avg_rating": _rounded(avg_rating, 2),
                "avg_duration": _rounded(avg_duration, 1),
                "avg_price": _rounded(avg_price, 2),
            },
            "per_category": [
                {
                    "category": category,
                    "count": category_count,
                    "total_popularity": int(category_popularity),
                    "avg_rating": _rounded(category_rating, 2),
                }
                for category, category_count, category_popularity, category_rating in categories
            ],
        }
