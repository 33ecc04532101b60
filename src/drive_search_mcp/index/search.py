"""Inverted index and ranking for file metadata search.

Provides:
- InvertedIndex: term → field → document postings with BM25+ scoring
- rank(): apply recency/frequency boosts, filtering and limits
- category_filter() / filter_for_keys(): predicates for typed filters

Matching rules:
- Every query token must match (AND)
- Exact, prefix ("doc" matches "document") and fuzzy (small typos) terms
- Field boosts: name 3, type keywords 2, path tokens 1
"""

from __future__ import annotations

import bisect
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from ..errors import CorruptPersistedStateError
from .schema import (
    FIELDS,
    MetadataRecord,
    SearchableDocument,
    parse_timestamp,
    tokenize,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping

FIELD_BOOSTS = {"name": 3.0, "type_keywords": 2.0, "path_tokens": 1.0}

# BM25+ parameters
BM25_K1 = 1.2
BM25_B = 0.7
BM25_DELTA = 0.5

# Term expansion
FUZZY_RATIO = 0.2
MAX_FUZZY_DISTANCE = 6
PREFIX_WEIGHT = 0.375
FUZZY_WEIGHT = 0.45

# Ranking boosts
RECENCY_HALF_DAYS = 30.0
RECENCY_WEIGHT = 0.3
FREQUENCY_WEIGHT = 0.2

# Typed filter keys → record categories
FILTER_KEYS = {
    "documents": "document",
    "spreadsheets": "spreadsheet",
    "presentations": "presentation",
    "folders": "folder",
    "pdfs": "pdf",
    "images": "image",
    "videos": "video",
    "audio": "audio",
}


@dataclass
class SearchResult:
    """A single search result with ranking info."""

    record: MetadataRecord
    score: float
    relevance: float

    def to_dict(self) -> dict:
        data = self.record.to_dict()
        data["category"] = self.record.category
        data["score"] = round(self.score, 4)
        return data


def fuzzy_distance(length: int) -> int:
    """Edit distance allowed for a query token (half-up rounding)."""
    return min(MAX_FUZZY_DISTANCE, math.floor(length * FUZZY_RATIO + 0.5))


def bounded_edit_distance(a: str, b: str, max_distance: int) -> int | None:
    """
    Levenshtein distance between a and b, or None if above max_distance.

    Rows are abandoned as soon as every cell exceeds the bound.
    """
    if abs(len(a) - len(b)) > max_distance:
        return None
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i] + [0] * len(b)
        row_min = current[0]
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            current[j] = min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + cost,
            )
            row_min = min(row_min, current[j])
        if row_min > max_distance:
            return None
        previous = current
    distance = previous[-1]
    return distance if distance <= max_distance else None


def recency_boost(modified_at: str | None, now: datetime) -> float:
    """e^(-ageDays/30); 0 when the timestamp is missing or unparseable."""
    modified = parse_timestamp(modified_at)
    if modified is None:
        return 0.0
    age_days = max((now - modified).total_seconds() / 86400, 0.0)
    return math.exp(-age_days / RECENCY_HALF_DAYS)


def frequency_boost(open_count: int) -> float:
    return math.log1p(max(open_count, 0))


def boost_factor(record: MetadataRecord, now: datetime) -> float:
    """Multiplier applied to text relevance."""
    return (
        1.0
        + RECENCY_WEIGHT * recency_boost(record.modified_at, now)
        + FREQUENCY_WEIGHT * frequency_boost(record.open_count)
    )


class InvertedIndex:
    """
    Field-aware inverted index over SearchableDocuments.

    Not thread-safe on its own; SearchIndexEngine serializes access.
    """

    def __init__(self) -> None:
        # term -> field -> doc id -> term frequency
        self._postings: dict[str, dict[str, dict[str, int]]] = {}
        self._documents: dict[str, SearchableDocument] = {}
        self._field_totals: dict[str, int] = dict.fromkeys(FIELDS, 0)
        self._sorted_terms: list[str] | None = None

    def __len__(self) -> int:
        return len(self._documents)

    def __contains__(self, doc_id: object) -> bool:
        return doc_id in self._documents

    def ids(self) -> set[str]:
        return set(self._documents)

    @property
    def term_count(self) -> int:
        return len(self._postings)

    def add(self, doc: SearchableDocument) -> None:
        if doc.id in self._documents:
            raise ValueError(f"Document {doc.id!r} already indexed")
        self._documents[doc.id] = doc
        for field_name in FIELDS:
            tokens = doc.field_tokens(field_name)
            self._field_totals[field_name] += len(tokens)
            for token in tokens:
                by_field = self._postings.get(token)
                if by_field is None:
                    by_field = self._postings[token] = {}
                    self._sorted_terms = None
                docs = by_field.setdefault(field_name, {})
                docs[doc.id] = docs.get(doc.id, 0) + 1

    def remove(self, doc_id: str) -> bool:
        """Remove a document; returns False if it was not indexed."""
        doc = self._documents.pop(doc_id, None)
        if doc is None:
            return False
        for field_name in FIELDS:
            tokens = doc.field_tokens(field_name)
            self._field_totals[field_name] -= len(tokens)
            for token in set(tokens):
                by_field = self._postings.get(token)
                if not by_field:
                    continue
                docs = by_field.get(field_name)
                if docs is None:
                    continue
                docs.pop(doc_id, None)
                if not docs:
                    del by_field[field_name]
                if not by_field:
                    del self._postings[token]
                    self._sorted_terms = None
        return True

    def clear(self) -> None:
        self._postings.clear()
        self._documents.clear()
        self._field_totals = dict.fromkeys(FIELDS, 0)
        self._sorted_terms = None

    # ─────────────────────────────────────────────────────────────────
    # Matching
    # ─────────────────────────────────────────────────────────────────

    def _vocabulary(self) -> list[str]:
        if self._sorted_terms is None:
            self._sorted_terms = sorted(self._postings)
        return self._sorted_terms

    def expand(self, token: str) -> dict[str, float]:
        """
        Map a query token to matching index terms and their weights.

        Exact matches weigh 1.0; prefix and fuzzy matches are discounted
        by how far they are from the query token. The best weight per
        index term wins.
        """
        expansions: dict[str, float] = {}
        if token in self._postings:
            expansions[token] = 1.0

        vocabulary = self._vocabulary()
        length = len(token)

        start = bisect.bisect_left(vocabulary, token)
        for term in vocabulary[start:]:
            if not term.startswith(token):
                break
            if term == token:
                continue
            extra = len(term) - length
            weight = PREFIX_WEIGHT * length / (length + 0.3 * extra)
            if weight > expansions.get(term, 0.0):
                expansions[term] = weight

        max_distance = fuzzy_distance(length)
        if max_distance > 0:
            for term in vocabulary:
                if term == token:
                    continue
                distance = bounded_edit_distance(token, term, max_distance)
                if distance is None:
                    continue
                weight = FUZZY_WEIGHT * length / (length + distance)
                if weight > expansions.get(term, 0.0):
                    expansions[term] = weight

        return expansions

    def _bm25(self, term_freq: int, doc_freq: int, field_name: str,
              field_length: int) -> float:
        total_docs = len(self._documents)
        avg_length = self._field_totals[field_name] / total_docs or 1.0
        idf = math.log(1 + (total_docs - doc_freq + 0.5) / (doc_freq + 0.5))
        norm = BM25_K1 * (1 - BM25_B + BM25_B * field_length / avg_length)
        return idf * (
            BM25_DELTA + term_freq * (BM25_K1 + 1) / (term_freq + norm)
        )

    def match(self, query: str) -> dict[str, float]:
        """
        Score documents matching every token of query.

        Returns:
            Mapping of document id → text relevance (empty if no match)
        """
        tokens = tokenize(query)
        if not tokens or not self._documents:
            return {}

        combined: dict[str, float] | None = None
        for token in dict.fromkeys(tokens):
            token_scores: dict[str, float] = {}
            for term, weight in self.expand(token).items():
                for field_name, docs in self._postings[term].items():
                    boost = FIELD_BOOSTS[field_name]
                    doc_freq = len(docs)
                    for doc_id, term_freq in docs.items():
                        length = len(
                            self._documents[doc_id].field_tokens(field_name)
                        )
                        score = self._bm25(
                            term_freq, doc_freq, field_name, length
                        )
                        token_scores[doc_id] = (
                            token_scores.get(doc_id, 0.0)
                            + weight * boost * score
                        )

            if combined is None:
                combined = token_scores
            else:
                combined = {
                    doc_id: combined[doc_id] + score
                    for doc_id, score in token_scores.items()
                    if doc_id in combined
                }
            if not combined:
                return {}

        return combined or {}

    # ─────────────────────────────────────────────────────────────────
    # Serialization
    # ─────────────────────────────────────────────────────────────────

    def to_dict(self) -> dict:
        return {
            "documents": [doc.to_dict() for doc in self._documents.values()],
            "postings": self._postings,
        }

    @classmethod
    def from_dict(cls, data: Mapping) -> InvertedIndex:
        """
        Restore an index serialized by to_dict().

        Raises:
            CorruptPersistedStateError: If the structure is malformed or
                postings reference unknown documents
        """
        index = cls()
        try:
            for raw in data["documents"]:
                doc = SearchableDocument(
                    id=str(raw["id"]),
                    name=list(raw["name"]),
                    path_tokens=list(raw["path_tokens"]),
                    type_keywords=list(raw["type_keywords"]),
                )
                index._documents[doc.id] = doc
                for field_name in FIELDS:
                    index._field_totals[field_name] += len(
                        doc.field_tokens(field_name)
                    )

            for term, by_field in data["postings"].items():
                restored: dict[str, dict[str, int]] = {}
                for field_name, docs in by_field.items():
                    if field_name not in FIELD_BOOSTS:
                        raise CorruptPersistedStateError(
                            f"Unknown field {field_name!r} in postings"
                        )
                    for doc_id, term_freq in docs.items():
                        if doc_id not in index._documents:
                            raise CorruptPersistedStateError(
                                f"Posting for unknown document {doc_id!r}"
                            )
                        if not isinstance(term_freq, int) or term_freq < 1:
                            raise CorruptPersistedStateError(
                                f"Bad term frequency for {term!r}"
                            )
                    restored[field_name] = dict(docs)
                index._postings[term] = restored
        except (KeyError, TypeError, AttributeError, ValueError) as e:
            raise CorruptPersistedStateError(
                f"Malformed index snapshot: {e}"
            ) from e
        return index


def rank(
    relevance: Mapping[str, float],
    records: Mapping[str, MetadataRecord],
    limit: int,
    filter_predicate: Callable[[MetadataRecord], bool] | None = None,
    now: datetime | None = None,
) -> list[SearchResult]:
    """
    Turn text relevance into ranked results.

    score = relevance × (1 + 0.3·recency + 0.2·ln(1 + openCount))

    Ties are broken by text relevance, then by id for stable output.
    """
    if limit <= 0:
        return []
    now = now or datetime.now(timezone.utc)

    results: list[SearchResult] = []
    for doc_id, text_score in relevance.items():
        record = records.get(doc_id)
        if record is None:
            continue
        if filter_predicate is not None and not filter_predicate(record):
            continue
        results.append(
            SearchResult(
                record=record,
                score=text_score * boost_factor(record, now),
                relevance=text_score,
            )
        )

    results.sort(key=lambda r: (-r.score, -r.relevance, r.record.id))
    return results[:limit]


def category_filter(*categories: str) -> Callable[[MetadataRecord], bool]:
    """Predicate accepting records whose category is one of categories."""
    wanted = frozenset(categories)

    def predicate(record: MetadataRecord) -> bool:
        return record.category in wanted

    return predicate


def filter_for_keys(
    keys: Iterable[str],
) -> Callable[[MetadataRecord], bool] | None:
    """
    Build a category predicate from typed filter keys.

    Args:
        keys: Filter keys such as "documents" or "pdfs"

    Returns:
        Predicate, or None when keys is empty

    Raises:
        ValueError: On an unknown filter key
    """
    categories = []
    for key in keys:
        if key not in FILTER_KEYS:
            valid = ", ".join(sorted(FILTER_KEYS))
            raise ValueError(f"Unknown filter {key!r} (expected: {valid})")
        categories.append(FILTER_KEYS[key])
    if not categories:
        return None
    return category_filter(*categories)
