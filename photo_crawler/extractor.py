from __future__ import annotations

import json
import logging
import threading
from datetime import datetime
from typing import Any

from .anthropic_client import AnthropicClient, VisionTransport
from .config import CrawlerConfig
from .errors import InvalidResponseError, NoContentError
from .models import (
    DEFAULT_CATEGORY,
    ClassificationResult,
    ContentCategory,
    ExtractionResult,
    WriteMode,
    WritePlan,
)
from .preprocess import prepare_for_upload
from .utils import iso_utc

logger = logging.getLogger(__name__)

OCR_PREVIEW_CHARS = 1500

CATEGORY_CONTEXT: dict[ContentCategory, str] = {
    ContentCategory.BOOK_PAGE: "This appears to be a book page or textbook. Look for chapter headings, page numbers, and paragraph text.",
    ContentCategory.ARTICLE: "This appears to be an article or web content. Look for headlines, bylines, and publication info.",
    ContentCategory.DUOLINGO: "This appears to be a Duolingo language learning exercise. Identify the language being learned and the exercise type.",
    ContentCategory.CODE_SNIPPET: "This appears to be code or a programming example. Identify the language and purpose.",
    ContentCategory.FLASHCARD: "This appears to be a flashcard or study material.",
    ContentCategory.NOTES: "This appears to be notes or personal study content.",
    ContentCategory.UNKNOWN: "Analyze this image and determine what kind of content it contains.",
}

RESPONSE_SCHEMA = """{
  "category": "one configured category name, or \\"default\\"",
  "title": "short human-readable title",
  "content": "markdown body, no frontmatter",
  "write": {
    "mode": "create" | "append" | "upsert" | "skip",
    "path": "vault-relative path ending in .md",
    "append_to": "anchor line to insert after, or null"
  }
}"""


def strip_code_fence(text: str) -> str:
    body = (text or "").strip()
    if body.startswith("```json"):
        body = body[7:]
    elif body.startswith("```"):
        body = body[3:]
    if body.endswith("```"):
        body = body[:-3]
    return body.strip()


def _load_json_object(text: str) -> dict[str, Any]:
    body = strip_code_fence(text)
    if not body:
        raise InvalidResponseError("empty response")
    try:
        obj = json.loads(body)
    except json.JSONDecodeError as first_exc:
        start = body.find("{")
        end = body.rfind("}")
        if start < 0 or end <= start:
            raise InvalidResponseError(f"Failed to decode: {first_exc}") from first_exc
        try:
            obj = json.loads(body[start : end + 1])
        except json.JSONDecodeError as exc:
            raise InvalidResponseError(f"Failed to decode: {exc}") from exc
    if not isinstance(obj, dict):
        raise InvalidResponseError(f"expected a JSON object, got {type(obj).__name__}")
    return obj


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return ""


class PolicyExtractor:
    """Compiles configured category rules into a prompt and parses the write plan back.

    Category choice and note placement are decided remotely. This class only
    frames the request and refuses to trust anything it gets back beyond a
    closed set of write modes and a configured category name.
    """

    def __init__(self, cfg: CrawlerConfig, transport: VisionTransport | None = None):
        self.cfg = cfg
        self.transport = transport or AnthropicClient(
            cfg.api_key,
            cfg.model,
            base_url=cfg.api_base_url,
            timeout=cfg.request_timeout_seconds,
            max_tokens=cfg.max_tokens,
        )
        self._slots = threading.BoundedSemaphore(max(1, cfg.max_concurrent_api_calls))
        self._category_names = {rule.name.lower(): rule.name for rule in cfg.categories}

    def extract(
        self,
        image_bytes: bytes,
        classification: ClassificationResult,
        asset_id: str,
        captured_time: datetime,
    ) -> ExtractionResult:
        upload_bytes, media_type = prepare_for_upload(image_bytes, self.cfg.max_image_dimension)
        system_prompt = self.build_system_prompt()
        user_prompt = self.build_user_prompt(classification, asset_id, captured_time)

        logger.info(f"Extracting {asset_id} (category hint: {classification.category_hint.value})")
        with self._slots:
            text = self.transport.complete(
                system_prompt=system_prompt,
                user_prompt=user_prompt,
                image_bytes=upload_bytes,
                media_type=media_type,
            )
        return self.parse_response(text)

    # Prompt construction

    def build_system_prompt(self) -> str:
        lines = [
            "You are a content extraction assistant. You read photos of text-based learning content "
            "and turn them into markdown notes for an Obsidian vault, following the user's rules.",
            "",
            "You MUST respond with a single JSON object only, no explanation, matching:",
            RESPONSE_SCHEMA,
            "",
            "CATEGORIES",
        ]
        if self.cfg.categories:
            for rule in self.cfg.categories:
                lines.append(f"- name: {rule.name}")
                if rule.hint:
                    lines.append(f"  recognize when: {rule.hint}")
                lines.append(f"  extraction rules: {rule.extraction_rules}")
                lines.append(f"  write rule: {rule.write_rule}")
        else:
            lines.append("- (none configured, always use \"default\")")
        lines.append("- name: default (use when no category above fits)")
        lines.append(f"  extraction rules: {self.cfg.default_rule.extraction_rules}")
        lines.append(f"  write rule: {self.cfg.default_rule.write_rule}")

        if self.cfg.global_rules:
            lines.append("")
            lines.append("GLOBAL RULES (apply to every category)")
            lines.extend(f"- {rule}" for rule in self.cfg.global_rules)

        lines.extend(
            [
                "",
                "OUTPUT RULES",
                "- category must be exactly one of the configured names above, or \"default\". Never invent a category.",
                "- content is plain markdown. Do not include YAML frontmatter; it is added for you.",
                "- ONLY extract text you can actually read. Use [illegible] instead of guessing.",
                "- write.path is relative to the vault root, starts under captures/, has no leading '/', "
                "no '~', no '..' segments, and ends in .md.",
                "- Turn placement hints from the write rule (e.g. \"a monthly note per language\") into a "
                "literal path using the asset_id and captured date given in the request.",
                "- write.mode: create for a new note, append to add to an existing note, upsert to append "
                "or create as needed.",
                "- write.append_to is the exact heading line to insert under (e.g. \"## 2026-02-07\"), or null.",
                "- If the rules say this image should not be captured, return write.mode \"skip\" "
                "with empty content.",
            ]
        )
        return "\n".join(lines)

    def build_user_prompt(
        self,
        classification: ClassificationResult,
        asset_id: str,
        captured_time: datetime,
    ) -> str:
        captured = iso_utc(captured_time)
        lines = [
            "Extract the content of this image and return the JSON write plan.",
            "",
            f"asset_id: {asset_id}",
            f"captured: {captured}",
            f"captured_date: {captured[:10]}",
            f"captured_month: {captured[:7].replace('-', '')}",
            "",
            f"Context: {CATEGORY_CONTEXT[classification.category_hint]}",
            f"On-device hint: {classification.category_hint.value} "
            f"(confidence {classification.confidence:.2f}; {classification.reason})",
        ]
        if classification.ocr_text.strip():
            lines.extend(
                [
                    "",
                    "On-device OCR (may contain errors; trust the image over it):",
                    classification.ocr_text[:OCR_PREVIEW_CHARS],
                ]
            )
        lines.extend(["", "Respond with JSON only."])
        return "\n".join(lines)

    # Response parsing

    def resolve_category(self, raw: str) -> str:
        key = raw.strip().lower()
        if not key:
            return DEFAULT_CATEGORY
        return self._category_names.get(key, DEFAULT_CATEGORY)

    def parse_response(self, text: str) -> ExtractionResult:
        obj = _load_json_object(text)

        category = self.resolve_category(_as_text(obj.get("category")))
        title = _as_text(obj.get("title"))
        content = _as_text(obj.get("content"))

        write_raw = obj.get("write")
        if not isinstance(write_raw, dict):
            write_raw = {}
        append_to = _as_text(write_raw.get("append_to")) or None
        plan = WritePlan(
            mode=WriteMode.parse(write_raw.get("mode")),
            path=_as_text(write_raw.get("path")),
            append_to=append_to,
        )

        if plan.mode is WriteMode.SKIP:
            return ExtractionResult(category=category, title=title, content="", write_plan=plan)
        if not content:
            raise NoContentError(f"Extraction returned empty content for mode '{plan.mode.value}'")
        return ExtractionResult(category=category, title=title, content=content, write_plan=plan)
