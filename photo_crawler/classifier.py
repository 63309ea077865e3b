from __future__ import annotations

import logging
from typing import Callable, Iterable, Sequence

from .config import (
    ARTICLE_PATTERNS,
    CODE_KEYWORDS,
    DUOLINGO_KEYWORDS,
    LEARNING_KEYWORDS,
    NOTE_TRIGGERS,
    CrawlerConfig,
)
from .errors import ImageDecodeError
from .models import ClassificationResult, ContentCategory, TextObservation
from .ocr import recognize_text

logger = logging.getLogger(__name__)

Recognizer = Callable[[bytes], tuple[list[TextObservation], int, int]]

# Confidence for rejected images stays below the lowest acceptance level (0.6).
REJECT_CONFIDENCE_CAP = 0.5
MARGIN_TOLERANCE = 0.05
MARGIN_SHARE = 0.6


def _matches(text: str, vocabulary: Iterable[str]) -> list[str]:
    return [kw for kw in vocabulary if kw in text]


def _pct(value: float) -> str:
    return f"{value * 100:.1f}%"


def text_density(observations: Sequence[TextObservation], width: int, height: int) -> float:
    image_area = float(width) * float(height)
    if not observations or image_area <= 0:
        return 0.0
    total = 0.0
    for obs in observations:
        total += (obs.width * width) * (obs.height * height)
    return min(1.0, total / image_area)


def has_consistent_left_margin(observations: Sequence[TextObservation]) -> bool:
    if len(observations) <= 5:
        return False
    left_edges = [obs.x for obs in observations]
    median_left = sorted(left_edges)[len(left_edges) // 2]
    close = [edge for edge in left_edges if abs(edge - median_left) < MARGIN_TOLERANCE]
    return len(close) / len(observations) > MARGIN_SHARE


def matched_keywords(lowered_text: str) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for kw in _matches(lowered_text, LEARNING_KEYWORDS) + _matches(lowered_text, DUOLINGO_KEYWORDS):
        seen.setdefault(kw, None)
    return tuple(seen)


def detect_category(lowered_text: str, observations: Sequence[TextObservation]) -> ContentCategory:
    # Most specific first.
    if len(_matches(lowered_text, DUOLINGO_KEYWORDS)) >= 2:
        return ContentCategory.DUOLINGO
    if len(_matches(lowered_text, CODE_KEYWORDS)) >= 3:
        return ContentCategory.CODE_SNIPPET
    if len(_matches(lowered_text, ARTICLE_PATTERNS)) >= 2:
        return ContentCategory.ARTICLE
    if has_consistent_left_margin(observations) and len(observations) > 8:
        return ContentCategory.BOOK_PAGE
    if _matches(lowered_text, NOTE_TRIGGERS):
        return ContentCategory.NOTES
    return ContentCategory.UNKNOWN


class LocalClassifier:
    """Cheap on-device screen over OCR output.

    Deterministic: the same observations and thresholds always give the same
    hint, confidence and reason.
    """

    def __init__(self, cfg: CrawlerConfig, recognizer: Recognizer | None = None):
        self.min_text_density = cfg.min_text_density
        self.min_line_count = cfg.min_line_count
        self.recognizer = recognizer or recognize_text

    def classify(self, image_bytes: bytes) -> ClassificationResult:
        try:
            observations, width, height = self.recognizer(image_bytes)
        except ImageDecodeError as exc:
            logger.warning(f"Image decode failed, using empty classification: {exc}")
            return ClassificationResult.empty(f"Could not create image from data: {exc}")
        return self.classify_observations(observations, width, height)

    def classify_observations(
        self,
        observations: Sequence[TextObservation],
        width: int,
        height: int,
    ) -> ClassificationResult:
        ocr_text = "\n".join(obs.text for obs in observations)
        lowered = ocr_text.lower()
        line_count = len(observations)
        density = text_density(observations, width, height)
        keywords = matched_keywords(lowered)
        hint = detect_category(lowered, observations)

        is_learning, confidence, reason = self._decide(line_count, density, keywords, hint)
        logger.debug(
            f"Classification: learning={is_learning} category={hint.value} "
            f"confidence={confidence:.2f} lines={line_count} density={density:.3f}"
        )
        return ClassificationResult(
            is_learning_content=is_learning,
            category_hint=hint,
            confidence=confidence,
            ocr_text=ocr_text,
            line_count=line_count,
            text_density=density,
            matched_keywords=keywords,
            reason=reason,
        )

    def _decide(
        self,
        line_count: int,
        density: float,
        keywords: tuple[str, ...],
        hint: ContentCategory,
    ) -> tuple[bool, float, str]:
        dense = density > self.min_text_density
        enough_lines = line_count > self.min_line_count

        if hint is ContentCategory.DUOLINGO:
            return True, 0.95, "Duolingo content detected via keyword patterns"
        if hint is ContentCategory.BOOK_PAGE and dense and enough_lines:
            return True, 0.9, f"Book page: high text density ({_pct(density)}) with paragraph layout"
        if hint is ContentCategory.CODE_SNIPPET:
            return True, 0.85, "Code snippet detected via syntax patterns"
        if hint is ContentCategory.ARTICLE and enough_lines:
            return True, 0.8, "Article detected via web/publication patterns"
        if dense and enough_lines:
            return True, 0.7, f"High text density ({_pct(density)}) with {line_count} lines"
        if len(keywords) >= 2 and line_count > 3:
            return True, 0.6, f"Matched {len(keywords)} learning keywords: {', '.join(keywords[:3])}"

        if not enough_lines:
            reason = f"Too few text lines ({line_count}, need more than {self.min_line_count})"
        else:
            reason = f"Text density too low ({_pct(density)}, need more than {_pct(self.min_text_density)})"
        return False, min(max(0.0, density * 2), REJECT_CONFIDENCE_CAP), reason
