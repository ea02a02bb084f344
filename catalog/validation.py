import csv
from datetime import datetime
import io
import math
import re
import time
from typing import BinaryIO

from catalog.errors import RecordValidationError, StructuralInputError
from catalog.schemas import CATEGORIES, LEVELS, PUBLISHED, STATUSES, CatalogRecord


REQUIRED_FIELDS = ("title", "description", "category", "owner", "duration")

# Upload headers seen in the wild, mapped onto canonical column names.
COLUMN_ALIASES: dict[str, str] = {
    "id": "record_id",
    "course_id": "record_id",
    "recordid": "record_id",
    "instructor": "owner",
    "author": "owner",
    "duration_units": "duration",
    "duration_hours": "duration",
    "enrollments": "popularity",
    "popularity_count": "popularity",
    "learning_outcomes": "outcomes",
}

# Field names accepted by single-record creates, keyed by canonical column.
FIELD_NAMES: dict[str, tuple[str, ...]] = {
    "duration": ("duration", "duration_units"),
    "popularity": ("popularity", "popularity_count"),
}

MAX_PRICE = 1_000_000
# Largest value a 32-bit signed integer column holds.
MAX_POPULARITY = 2**31 - 1

_LIST_SPLIT_RE = re.compile(r"[,;]")
_CATEGORY_LOOKUP = {category.lower(): category for category in CATEGORIES}
_LEVEL_LOOKUP = {level.lower(): level for level in LEVELS}


def read_upload(byte_stream: bytes | BinaryIO, *, max_bytes: int | None = None) -> str:
    try:
        if isinstance(byte_stream, (bytes, bytearray, str)):
            raw = byte_stream
        else:
            raw = byte_stream.read() if max_bytes is None else byte_stream.read(max_bytes + 1)
    except (OSError, ValueError) as exc:
        raise StructuralInputError(f"upload stream is unreadable: {exc}") from exc

    size = len(raw.encode("utf-8")) if isinstance(raw, str) else len(raw)
    if max_bytes is not None and size > max_bytes:
        raise StructuralInputError(f"upload exceeds the {max_bytes} byte limit")
    if isinstance(raw, str):
        return raw
    if not raw:
        raise StructuralInputError("CSV file is empty or invalid")
    try:
        return bytes(raw).decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise StructuralInputError("upload is not valid UTF-8 text") from exc


def canonical_column(name: str) -> str:
    key = name.strip().lower().replace(" ", "_").replace("-", "_")
    return COLUMN_ALIASES.get(key, key)


def parse_upload(byte_stream: bytes | BinaryIO, *, max_bytes: int | None = None) -> list[dict[str, str]]:
    text = read_upload(byte_stream, max_bytes=max_bytes)
    reader = csv.reader(io.StringIO(text, newline=""), strict=True)

    try:
        lines = [cells for cells in reader if any(cell.strip() for cell in cells)]
    except csv.Error as exc:
        raise StructuralInputError(f"malformed CSV at line {reader.line_num}: {exc}") from exc

    if not lines:
        raise StructuralInputError("CSV file is empty or invalid")

    header = [canonical_column(name) for name in lines[0]]
    rows: list[dict[str, str]] = []
    for cells in lines[1:]:
        row = {name: "" for name in header}
        for name, cell in zip(header, cells):
            if name:
                row[name] = cell
        rows.append(row)

    if not rows:
        raise StructuralInputError("CSV file contains a header but no data rows")
    return rows


def _pick(fields: dict[str, object], column: str) -> object:
    for name in FIELD_NAMES.get(column, (column,)):
        value = fields.get(name)
        if value is not None:
            return value
    return None


def _is_blank(value: object) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def missing_required_fields(fields: dict[str, object]) -> list[str]:
    return [name for name in REQUIRED_FIELDS if _is_blank(_pick(fields, name))]


def parse_number(value: object, default: float = 0.0) -> float:
    if isinstance(value, bool):
        return default
    try:
        number = float(str(value).strip()) if isinstance(value, str) else float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(number):
        return default
    return number


def split_list(value: object, *, lower: bool = False) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        items = [str(item) for item in value]
    else:
        items = _LIST_SPLIT_RE.split(str(value))

    cleaned = [item.strip() for item in items if item and str(item).strip()]
    if lower:
        return [item.lower() for item in cleaned]
    return cleaned


def coerce_category(value: object) -> str:
    return _CATEGORY_LOOKUP.get(str(value or "").strip().lower(), "Other")


def coerce_level(value: object) -> str:
    return _LEVEL_LOOKUP.get(str(value or "").strip().lower(), "Beginner")


def _text(value: object) -> str:
    return "" if value is None else str(value).strip()


def normalize_fields(fields: dict[str, object]) -> dict[str, object]:
    record_id = _text(_pick(fields, "record_id")).upper()
    status = _text(_pick(fields, "status")).lower() or PUBLISHED
    thumbnail_url = _text(_pick(fields, "thumbnail_url"))

    return {
        "record_id": record_id or None,
        "title": _text(_pick(fields, "title")),
        "description": _text(_pick(fields, "description")),
        "category": coerce_category(_pick(fields, "category")),
        "owner": _text(_pick(fields, "owner")),
        "duration_units": parse_number(_pick(fields, "duration")),
        "level": coerce_level(_pick(fields, "level")),
        "price": parse_number(_pick(fields, "price")),
        "popularity_count": int(parse_number(_pick(fields, "popularity"))),
        "rating": parse_number(_pick(fields, "rating")),
        "tags": split_list(_pick(fields, "tags"), lower=True),
        "prerequisites": split_list(_pick(fields, "prerequisites")),
        "outcomes": split_list(_pick(fields, "outcomes")),
        "thumbnail_url": thumbnail_url or None,
        "status": status,
    }


def _length_error(name: str, value: str, low: int, high: int) -> str | None:
    if len(value) < low or len(value) > high:
        return f"{name} must be between {low} and {high} characters"
    return None


def check_record(fields: dict[str, object]) -> None:
    errors: list[str] = []

    for name, low, high in (("title", 3, 200), ("description", 10, 2000), ("owner", 2, 100)):
        message = _length_error(name, str(fields.get(name) or ""), low, high)
        if message:
            errors.append(message)

    duration = float(fields.get("duration_units") or 0)
    if duration < 1 or duration > 1000:
        errors.append("duration must be between 1 and 1000")
    price = float(fields.get("price") or 0)
    if price < 0:
        errors.append("price cannot be negative")
    elif price > MAX_PRICE:
        errors.append(f"price cannot exceed {MAX_PRICE}")
    popularity = int(fields.get("popularity_count") or 0)
    if popularity < 0:
        errors.append("popularity cannot be negative")
    elif popularity > MAX_POPULARITY:
        errors.append(f"popularity cannot exceed {MAX_POPULARITY}")

    rating = float(fields.get("rating") or 0)
    if rating < 0 or rating > 5:
        errors.append("rating must be between 0 and 5")
    if fields.get("status") not in STATUSES:
        errors.append(f"status must be one of {', '.join(STATUSES)}")

    record_id = fields.get("record_id")
    if record_id and len(str(record_id)) > 64:
        errors.append("record_id cannot exceed 64 characters")

    if errors:
        raise RecordValidationError(errors)


def derive_record_id(title: str) -> str:
    initials = "".join(word[0] for word in title.split() if word[0].isalnum()).upper()[:4] or "REC"
    # Microsecond suffix keeps sequential inserts with the same initials apart.
    suffix = time.time_ns() // 1000 % 100_000_000
    return f"{initials}{suffix:08d}"


def build_record(fields: dict[str, object], now: datetime) -> CatalogRecord:
    check_record(fields)
    values = dict(fields)
    values["record_id"] = values.get("record_id") or derive_record_id(str(values["title"]))
    values["created_at"] = now
    values["updated_at"] = now
    return CatalogRecord(**values)
