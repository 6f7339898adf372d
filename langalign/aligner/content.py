import csv
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import structlog

logger = structlog.get_logger()

ID_COLUMN = "ContentId"
CONTENT_COLUMN = "Content"

EmbeddingVector = list[float]


class ValidationError(Exception):
    """
    Raised when an input content set is malformed (empty, missing or duplicate
    ids). Raised before any embedding request is issued.
    """


class RowStatus(str, Enum):
    PENDING = "pending"
    INELIGIBLE = "ineligible"
    EMBEDDED = "embedded"
    EMBEDDING_FAILED = "embedding_failed"


@dataclass
class ContentRow:
    """
    A single content unit loaded from an export.

    Attributes:
        id (str): The caller-supplied ContentId, unique within one set.
        content (str): The raw content, possibly containing markup.
        original_index (int): Position of the row in its source file.
        normalized_content (str): Cleaned text used for embedding.
        embedding (EmbeddingVector | None): Set once a batch succeeds.
        status (RowStatus): Where the row is in the pipeline.
    """

    id: str
    content: str
    original_index: int = 0
    normalized_content: str = ""
    embedding: EmbeddingVector | None = None
    status: RowStatus = RowStatus.PENDING

    @property
    def is_eligible(self) -> bool:
        return self.status not in (RowStatus.INELIGIBLE, RowStatus.EMBEDDING_FAILED)

    @property
    def has_embedding(self) -> bool:
        return self.embedding is not None and self.status == RowStatus.EMBEDDED


@dataclass
class ContentSet:
    """An ordered collection of rows read from one file."""

    name: str
    rows: list[ContentRow] = field(default_factory=list)

    def __iter__(self) -> Iterator[ContentRow]:
        return iter(self.rows)

    def __len__(self) -> int:
        return len(self.rows)

    def by_id(self) -> dict[str, ContentRow]:
        return {row.id: row for row in self.rows}

    def embedded_rows(self) -> list[ContentRow]:
        return [row for row in self.rows if row.has_embedding]

    def eligible_rows(self) -> list[ContentRow]:
        return [row for row in self.rows if row.is_eligible]

    def limit(self, max_rows: int) -> "ContentSet":
        """Keep only the first max_rows rows. 0 means no limit."""
        if max_rows <= 0 or max_rows >= len(self.rows):
            return self
        return ContentSet(name=self.name, rows=self.rows[:max_rows])

    @classmethod
    def from_records(
        cls, name: str, records: Iterable[Mapping[str, str | None]]
    ) -> "ContentSet":
        """
        Builds a set from `{"id": ..., "content": ...}` records. The caller's
        order is kept as the original index.
        """
        rows = [
            ContentRow(
                id=(record.get("id") or "").strip(),
                content=record.get("content") or "",
                original_index=index,
            )
            for index, record in enumerate(records)
        ]
        return cls(name=name, rows=rows)


def validate_content_set(content_set: ContentSet) -> None:
    """
    Checks the set is usable for alignment.

    Raises:
        ValidationError: if the set is empty, a row has an empty id, or an id
            appears more than once.
    """
    if len(content_set) == 0:
        raise ValidationError(f"content set '{content_set.name}' is empty")

    seen: dict[str, int] = {}
    duplicates: list[str] = []
    for row in content_set:
        if not row.id:
            raise ValidationError(
                f"content set '{content_set.name}' has a row without "
                f"{ID_COLUMN} at position {row.original_index}"
            )
        if row.id in seen:
            duplicates.append(row.id)
        seen[row.id] = row.original_index

    if duplicates:
        raise ValidationError(
            f"content set '{content_set.name}' has duplicate ids: "
            + ", ".join(sorted(set(duplicates)))
        )


def read_content_csv(path: str | Path, name: str | None = None) -> ContentSet:
    """
    Reads a `ContentId,Content` CSV export. Values are trimmed, extra columns
    are ignored and missing fields are treated as empty.

    Raises:
        FileNotFoundError: if the file does not exist.
        ValidationError: if the file is not UTF-8, is not valid CSV, has no
            header or lacks a required column.
    """
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"CSV file not found: {path}")

    try:
        with path.open(newline="", encoding="utf-8-sig") as f:
            reader = csv.DictReader(f)
            if reader.fieldnames is None:
                raise ValidationError(f"CSV file '{path}' is empty")
            fieldnames = [column.strip() for column in reader.fieldnames]
            missing = {ID_COLUMN, CONTENT_COLUMN} - set(fieldnames)
            if missing:
                columns = ", ".join(sorted(missing))
                raise ValidationError(
                    f"CSV file '{path}' is missing columns: {columns}"
                )
            reader.fieldnames = fieldnames
            records = [
                {
                    "id": (row.get(ID_COLUMN) or "").strip(),
                    "content": (row.get(CONTENT_COLUMN) or "").strip(),
                }
                for row in reader
            ]
    except UnicodeDecodeError as e:
        raise ValidationError(
            f"CSV file '{path}' is not UTF-8 encoded: {e.reason} at byte {e.start}"
        ) from e
    except csv.Error as e:
        raise ValidationError(f"CSV file '{path}' is malformed: {e}") from e

    logger.debug("read content csv", path=str(path), rows=len(records))
    return ContentSet.from_records(name or path.name, records)
