"""Record types and the tokenized projection used for matching.

- MetadataRecord: the stored file metadata (what search returns)
- SearchableDocument: derived tokens per field (what search matches)

IMPORTANT: a SearchableDocument is never edited in place. Whenever its
record changes, project() builds a fresh one and the old one is removed
from the inverted index first.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone

from ..errors import InvalidRecordError

# Snapshot format version (bump when the serialized layout changes)
SNAPSHOT_VERSION = 1

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"

# Indexed fields in boost order
FIELDS = ("name", "type_keywords", "path_tokens")

_WORD = re.compile(r"[^\W_]+", re.UNICODE)
_CAMEL = re.compile(r"([a-z])([A-Z])")
_SEPARATORS = re.compile(r"[._-]")

# mimeType substring → keywords (order matches the category precedence)
_TYPE_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("document", ("doc", "document", "text", "word")),
    ("spreadsheet", ("sheet", "excel", "csv", "table")),
    ("presentation", ("slide", "powerpoint", "ppt", "presentation")),
    ("pdf", ("pdf", "document")),
    ("folder", ("folder", "directory")),
    ("image", ("image", "photo", "picture")),
    ("video", ("video", "movie")),
    ("audio", ("audio", "music", "sound")),
)

# Office mimeTypes contain "officedocument", so "document" is checked last
_CATEGORY_ORDER = (
    "folder",
    "spreadsheet",
    "presentation",
    "pdf",
    "image",
    "video",
    "audio",
    "document",
)


@dataclass
class MetadataRecord:
    """File metadata harvested from the source, keyed by id."""

    id: str
    name: str
    mime_type: str = ""
    modified_at: str | None = None
    size: int | None = None
    open_count: int = 0
    last_opened_at: str | None = None
    parents: list[str] = field(default_factory=list)
    web_view_link: str | None = None
    icon_link: str | None = None

    @property
    def category(self) -> str:
        return file_category(self.mime_type)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SearchableDocument:
    """Tokenized projection of a MetadataRecord."""

    id: str
    name: list[str]
    path_tokens: list[str]
    type_keywords: list[str]

    def field_tokens(self, field_name: str) -> list[str]:
        return getattr(self, field_name)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class StoreKeys:
    """The three independent durable store keys of one index instance."""

    index: str
    metadata: str
    cursor: str

    @classmethod
    def for_user(cls, user_id: str) -> StoreKeys:
        return cls(
            index=f"{user_id}-search.json",
            metadata=f"{user_id}-metadata.json",
            cursor=f"{user_id}-change-token",
        )


def tokenize(text: str) -> list[str]:
    """Split text into lower-case alphanumeric tokens."""
    if not text:
        return []
    return [t.lower() for t in _WORD.findall(text)]


def tokenize_path(name: str) -> list[str]:
    """
    Tokenize a file name the way a path would be.

    Drive has no real paths, so separators (``. _ -``) and camelCase
    boundaries in the name stand in for path components.

    Example:
        >>> tokenize_path("Q3_budgetReview-final.xlsx")
        ['q3', 'budget', 'review', 'final', 'xlsx']
    """
    text = _SEPARATORS.sub(" ", name or "")
    text = _CAMEL.sub(r"\1 \2", text)
    return tokenize(text)


def type_keywords(mime_type: str) -> list[str]:
    """Return searchable keywords for a mimeType (may repeat across rules)."""
    keywords: list[str] = []
    mime = (mime_type or "").lower()
    for needle, words in _TYPE_KEYWORDS:
        if needle in mime:
            keywords.extend(words)
    return keywords


def file_category(mime_type: str) -> str:
    """Map a mimeType to a coarse category name."""
    mime = (mime_type or "").lower()
    for needle in _CATEGORY_ORDER:
        if needle in mime:
            return needle
    return "other"


def is_folder(record: MetadataRecord) -> bool:
    return record.mime_type == FOLDER_MIME_TYPE


def project(record: MetadataRecord) -> SearchableDocument:
    """Build the SearchableDocument for a record."""
    return SearchableDocument(
        id=record.id,
        name=tokenize(record.name),
        path_tokens=tokenize_path(record.name),
        type_keywords=type_keywords(record.mime_type),
    )


def parse_timestamp(value: str | None) -> datetime | None:
    """
    Parse an ISO-8601 timestamp; naive values are taken as UTC.

    Returns:
        Aware datetime, or None for missing/unparseable input
    """
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def record_from_dict(data: dict) -> MetadataRecord:
    """
    Build a MetadataRecord from a dict.

    Accepts both snake_case keys (snapshots) and the camelCase keys the
    Drive API returns (``mimeType``, ``modifiedTime``, ``webViewLink``...).
    ``category`` is accepted as a fallback for ``mimeType``.

    Raises:
        InvalidRecordError: If id is missing or empty
    """
    record_id = data.get("id")
    if not record_id:
        raise InvalidRecordError(f"Record without id: {data!r}")

    size = data.get("size")
    if size is not None:
        try:
            size = int(size)
        except (TypeError, ValueError):
            size = None

    return MetadataRecord(
        id=str(record_id),
        name=data.get("name") or "",
        mime_type=(
            data.get("mime_type")
            or data.get("mimeType")
            or data.get("category")
            or ""
        ),
        modified_at=data.get("modified_at") or data.get("modifiedTime"),
        size=size,
        open_count=int(data.get("open_count") or data.get("openCount") or 0),
        last_opened_at=(
            data.get("last_opened_at") or data.get("lastOpenedTime")
        ),
        parents=list(data.get("parents") or []),
        web_view_link=data.get("web_view_link") or data.get("webViewLink"),
        icon_link=data.get("icon_link") or data.get("iconLink"),
    )
