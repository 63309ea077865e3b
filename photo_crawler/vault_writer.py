from __future__ import annotations

import logging
import re
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Iterator

from .config import CAPTURES_DIR
from .errors import WriteCoordinationError, WriteFSError
from .markdown import (
    Frontmatter,
    insert_block,
    join_document,
    new_document_body,
    new_frontmatter,
    quote,
    split_document,
)
from .models import DEFAULT_CATEGORY, ExtractionResult, WriteMode
from .utils import atomic_write_text, iso_utc

logger = logging.getLogger(__name__)

FORBIDDEN_CHARS = re.compile(r'[:/\\?"<>|*]')
WHITESPACE = re.compile(r"\s+")
MAX_SEGMENT_LEN = 120


def sanitize_segment(segment: str) -> str | None:
    """Strip characters that are unsafe in file names. None means the segment is unusable."""
    cleaned = FORBIDDEN_CHARS.sub("", segment).strip()
    if not cleaned or cleaned in (".", ".."):
        return None
    return cleaned[:MAX_SEGMENT_LEN].strip() or None


def slugify(name: str) -> str:
    cleaned = sanitize_segment(name.lower()) or ""
    return WHITESPACE.sub("-", cleaned).strip("-")


def default_relative_path(category: str, asset_id: str) -> str:
    id_part = sanitize_segment(asset_id) or "untitled"
    category_part = slugify(category) if category.strip().lower() != DEFAULT_CATEGORY else ""
    if not category_part:
        return f"{CAPTURES_DIR}/notes/unknown/{id_part}.md"
    return f"{CAPTURES_DIR}/{category_part}/{id_part}.md"


def sanitize_plan_path(raw: str) -> str | None:
    """Validate a remote write-plan path. None means fall back to the default path."""
    text = raw.strip()
    if not text or text.startswith(("/", "\\", "~")):
        return None

    segments: list[str] = []
    for part in text.split("/"):
        if part == "" or part.strip() == ".":
            continue
        if part.strip() == "..":
            return None
        cleaned = sanitize_segment(part)
        if cleaned is None:
            return None
        segments.append(cleaned)
    if not segments:
        return None

    if segments[0].lower() == CAPTURES_DIR:
        segments[0] = CAPTURES_DIR
    else:
        segments.insert(0, CAPTURES_DIR)
    if not segments[-1].lower().endswith(".md"):
        segments[-1] = f"{segments[-1]}.md"
    if len(segments) < 2 or segments[-1][:-3].strip() == "":
        return None
    return "/".join(segments)


class VaultWriter:
    """Turns write plans into note files under ``<vault>/captures``.

    Every mutation rewrites the whole file through a temp-file rename, and
    writes to the same relative path are serialized in-process.
    """

    def __init__(self, vault_path: str | Path, *, lock_timeout: float = 30.0):
        self.vault_path = Path(vault_path).expanduser()
        self.lock_timeout = lock_timeout
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def captures_root(self) -> Path:
        return self.vault_path / CAPTURES_DIR

    # Path resolution

    def _inside_captures(self, relative_path: str) -> bool:
        root = self.captures_root.resolve()
        target = (self.vault_path / relative_path).resolve()
        return target == root or root in target.parents

    def resolve_path(self, extraction: ExtractionResult, asset_id: str) -> str:
        fallback = default_relative_path(extraction.category, asset_id)
        raw = extraction.write_plan.path
        if not raw.strip():
            return fallback
        resolved = sanitize_plan_path(raw)
        if resolved is None or not self._inside_captures(resolved):
            logger.warning(f"Unsafe write path {raw!r} for {asset_id}, using {fallback}")
            return fallback
        return resolved

    def _next_available(self, relative_path: str) -> str:
        if not (self.vault_path / relative_path).exists():
            return relative_path
        posix = PurePosixPath(relative_path)
        n = 2
        while True:
            candidate = str(posix.with_name(f"{posix.stem}-{n}{posix.suffix}"))
            if not (self.vault_path / candidate).exists():
                return candidate
            n += 1

    # Coordination

    @contextmanager
    def _coordinate(self, relative_path: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._locks.setdefault(relative_path, threading.Lock())
        if not lock.acquire(timeout=self.lock_timeout):
            raise WriteCoordinationError(relative_path, f"lock not acquired within {self.lock_timeout:.0f}s")
        try:
            yield
        finally:
            lock.release()

    # Writing

    def write(self, extraction: ExtractionResult, captured_time: datetime, asset_id: str) -> str | None:
        """Apply the extraction's write plan. Returns the vault-relative path written, None for skip."""
        plan = extraction.write_plan
        if plan.mode is WriteMode.SKIP:
            return None

        relative_path = self.resolve_path(extraction, asset_id)
        with self._coordinate(relative_path):
            try:
                if plan.mode is WriteMode.CREATE:
                    written = self._create(extraction, captured_time, asset_id, relative_path)
                else:
                    written = self._merge(extraction, captured_time, asset_id, relative_path)
            except OSError as exc:
                raise WriteFSError(relative_path, str(exc)) from exc
        logger.info(f"Wrote ({plan.mode.value}): {written}")
        return written

    def _create(self, extraction: ExtractionResult, captured_time: datetime, asset_id: str, relative_path: str) -> str:
        target = self._next_available(relative_path)
        fm = new_frontmatter(extraction.title, extraction.category, captured_time, [asset_id])
        body = new_document_body(extraction.title, extraction.content)
        atomic_write_text(self.vault_path / target, join_document(fm, body))
        return target

    def _merge(self, extraction: ExtractionResult, captured_time: datetime, asset_id: str, relative_path: str) -> str:
        plan = extraction.write_plan
        full_path = self.vault_path / relative_path

        if not full_path.exists():
            fm = new_frontmatter(extraction.title, extraction.category, captured_time, [asset_id])
            body = new_document_body(extraction.title, extraction.content, plan.append_to)
            atomic_write_text(full_path, join_document(fm, body))
            return relative_path

        fm, body = split_document(full_path.read_text(encoding="utf-8"))
        if fm is None:
            fm = new_frontmatter(extraction.title, extraction.category, captured_time, [])
        fm.merge_asset_id(asset_id)
        if plan.mode is WriteMode.UPSERT:
            _fill_missing(fm, extraction, captured_time)

        body = insert_block(body, extraction.content, plan.append_to)
        atomic_write_text(full_path, join_document(fm, body))
        return relative_path

    # Dedup scan

    def existing_asset_ids(self) -> set[str]:
        """Union of asset IDs recorded in every note under the captures root."""
        found: set[str] = set()
        if not self.captures_root.is_dir():
            return found
        for note in sorted(self.captures_root.rglob("*.md")):
            if not note.is_file():
                continue
            try:
                text = note.read_text(encoding="utf-8", errors="replace")
            except OSError as exc:
                logger.warning(f"Cannot read {note} during dedup scan: {exc}")
                continue
            fm, _ = split_document(text)
            if fm is not None:
                found.update(fm.asset_ids())
        return found


def _fill_missing(fm: Frontmatter, extraction: ExtractionResult, captured_time: datetime) -> None:
    if not fm.has("title") and extraction.title:
        fm.set("title", quote(extraction.title))
    if not fm.has("category"):
        fm.set("category", quote(extraction.category))
    if not fm.has("captured"):
        fm.set("captured", iso_utc(captured_time))
