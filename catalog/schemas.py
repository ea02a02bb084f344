from dataclasses import dataclass, field
from datetime import datetime


CATEGORIES = (
    "Programming",
    "Data Science",
    "Web Development",
    "Mobile Development",
    "Machine Learning",
    "DevOps",
    "Database",
    "Cloud Computing",
    "Cybersecurity",
    "UI/UX Design",
    "Digital Marketing",
    "Business",
    "Other",
)
LEVELS = ("Beginner", "Intermediate", "Advanced")
STATUSES = ("draft", "published", "archived")
PUBLISHED = "published"

SORT_FIELDS = (
    "created_at",
    "updated_at",
    "title",
    "price",
    "rating",
    "popularity_count",
    "duration_units",
)


@dataclass(frozen=True)
class CatalogRecord:
    record_id: str
    title: str
    description: str
    category: str
    owner: str
    duration_units: float
    level: str = "Beginner"
    price: float = 0.0
    popularity_count: int = 0
    rating: float = 0.0
    tags: list[str] = field(default_factory=list)
    prerequisites: list[str] = field(default_factory=list)
    outcomes: list[str] = field(default_factory=list)
    thumbnail_url: str | None = None
    status: str = PUBLISHED
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_published(self) -> bool:
        return self.status == PUBLISHED

    def to_dict(self) -> dict[str, object]:
        return {
            "record_id": self.record_id,
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "owner": self.owner,
            "duration_units": self.duration_units,
            "level": self.level,
            "price": self.price,
            "popularity_count": self.popularity_count,
            "rating": self.rating,
            "tags": list(self.tags),
            "prerequisites": list(self.prerequisites),
            "outcomes": list(self.outcomes),
            "thumbnail_url": self.thumbnail_url,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass(frozen=True)
class ListFilters:
    category: str | None = None
    owner: str | None = None
    level: str | None = None
    status: str = PUBLISHED
    text: str | None = None


@dataclass(frozen=True)
class SortSpec:
    field: str = "created_at"
    order: str = "desc"


@dataclass(frozen=True)
class SearchFilters:
    category: str | None = None
    owner: str | None = None


@dataclass(frozen=True)
class SearchHits:
    hits: list[dict[str, object]]
    total: int


@dataclass
class IngestionReport:
    total_rows: int = 0
    valid_rows: int = 0
    saved_rows: int = 0
    saved_records: list[CatalogRecord] = field(default_factory=list)
    row_errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "total_rows": self.total_rows,
            "valid_rows": self.valid_rows,
            "saved_rows": self.saved_rows,
            "saved_records": [record.to_dict() for record in self.saved_records],
            "row_errors": list(self.row_errors),
        }


@dataclass(frozen=True)
class QueryResult:
    data: dict[str, object]
    cached: bool


@dataclass(frozen=True)
class ResyncResult:
    indexed: int
    removed: int
    skipped: bool
