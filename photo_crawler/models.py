from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


@dataclass(frozen=True)
class TextObservation:
    """One recognized text line. Box is normalized [0, 1] with a bottom-left origin."""

    text: str
    x: float
    y: float
    width: float
    height: float
    confidence: float = 1.0


class ContentCategory(str, Enum):
    BOOK_PAGE = "book_page"
    ARTICLE = "article"
    DUOLINGO = "duolingo"
    CODE_SNIPPET = "code_snippet"
    FLASHCARD = "flashcard"
    NOTES = "notes"
    UNKNOWN = "unknown"

    @property
    def display_name(self) -> str:
        return self.value.replace("_", " ").title()


@dataclass(frozen=True)
class ClassificationResult:
    is_learning_content: bool
    category_hint: ContentCategory
    confidence: float
    ocr_text: str
    line_count: int
    text_density: float
    matched_keywords: tuple[str, ...]
    reason: str

    @classmethod
    def empty(cls, reason: str) -> "ClassificationResult":
        return cls(
            is_learning_content=False,
            category_hint=ContentCategory.UNKNOWN,
            confidence=0.0,
            ocr_text="",
            line_count=0,
            text_density=0.0,
            matched_keywords=(),
            reason=reason,
        )


DEFAULT_CATEGORY = "default"


@dataclass(frozen=True)
class ExtractionCategoryRule:
    name: str
    extraction_rules: str
    write_rule: str
    hint: str | None = None


@dataclass(frozen=True)
class ExtractionDefaultRule:
    extraction_rules: str = "Extract readable text. Add a short summary."
    write_rule: str = "Create a new note under captures/notes/unknown/ using asset_id as filename."


class WriteMode(str, Enum):
    CREATE = "create"
    APPEND = "append"
    UPSERT = "upsert"
    SKIP = "skip"

    @classmethod
    def parse(cls, raw: object) -> "WriteMode":
        try:
            return cls(str(raw or "").strip().lower())
        except ValueError:
            return cls.CREATE


@dataclass(frozen=True)
class WritePlan:
    mode: WriteMode = WriteMode.CREATE
    path: str = ""
    append_to: str | None = None


@dataclass(frozen=True)
class ExtractionResult:
    category: str
    title: str
    content: str
    write_plan: WritePlan = field(default_factory=WritePlan)

    @property
    def is_skip(self) -> bool:
        return self.write_plan.mode is WriteMode.SKIP


@dataclass(frozen=True)
class Photo:
    id: str
    creation_time: datetime
    image_bytes: bytes = field(repr=False)


class ScanStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class ScanResult:
    status: ScanStatus = ScanStatus.COMPLETED
    message: str = ""
    photos_found: int = 0
    photos_processed: int = 0
    photos_extracted: int = 0
    photos_written: int = 0
    photos_skipped: int = 0
    errors: int = 0


# Pipeline events, delivered to listeners in emission order.


@dataclass(frozen=True)
class ScanStarted:
    started_at: datetime


@dataclass(frozen=True)
class ItemProcessed:
    asset_id: str
    classification: ClassificationResult
    extraction: ExtractionResult | None
    markdown_path: str | None
    reason: str = ""

    @property
    def written(self) -> bool:
        return self.markdown_path is not None


@dataclass(frozen=True)
class ItemFailed:
    asset_id: str
    message: str
    error: BaseException | None = None


@dataclass(frozen=True)
class ScanFinished:
    result: ScanResult


PipelineEvent = ScanStarted | ItemProcessed | ItemFailed | ScanFinished
