"""Frontmatter codec and note body generation.

Notes look like::

    ---
    title: "Sapiens"
    category: "BookNote"
    captured: 2026-02-07T10:00:00Z
    asset_ids: ["A1B2/L0/001"]
    ---

    # Sapiens

    body...

Only the keys this project writes are interpreted. Any other frontmatter
lines are kept verbatim when a note is rewritten.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime

from .utils import iso_utc

DELIMITER = "---"
KEY_LINE = re.compile(r"^([A-Za-z_][\w-]*)\s*:(.*)$")
BLOCK_ITEM = re.compile(r"^\s*-\s*(.*)$")


def _unquote(raw: str) -> str:
    value = raw.strip()
    if len(value) >= 2 and value[0] == value[-1] == '"':
        try:
            return str(json.loads(value))
        except json.JSONDecodeError:
            return value[1:-1]
    if len(value) >= 2 and value[0] == value[-1] == "'":
        return value[1:-1].replace("''", "'")
    return value


def _parse_flow_list(raw: str) -> list[str]:
    value = raw.strip()
    try:
        parsed = json.loads(value)
        if isinstance(parsed, list):
            return [str(x) for x in parsed if str(x).strip()]
    except json.JSONDecodeError:
        pass
    inner = value[1:-1] if value.startswith("[") and value.endswith("]") else value
    return [_unquote(part) for part in inner.split(",") if _unquote(part)]


def quote(value: str) -> str:
    return json.dumps(value, ensure_ascii=False)


@dataclass
class Frontmatter:
    # (key, lines) in file order. lines[0] is the "key: value" line itself.
    entries: list[tuple[str, list[str]]] = field(default_factory=list)

    @classmethod
    def parse(cls, block: str) -> "Frontmatter":
        entries: list[tuple[str, list[str]]] = []
        for line in block.split("\n"):
            match = KEY_LINE.match(line)
            if match:
                entries.append((match.group(1), [line]))
            elif entries:
                entries[-1][1].append(line)
            elif line.strip():
                entries.append(("", [line]))
        return cls(entries)

    def _entry(self, key: str) -> list[str] | None:
        for name, lines in self.entries:
            if name == key:
                return lines
        return None

    def has(self, key: str) -> bool:
        return self._entry(key) is not None

    def get(self, key: str) -> str | None:
        lines = self._entry(key)
        if lines is None:
            return None
        match = KEY_LINE.match(lines[0])
        return _unquote(match.group(2)) if match else None

    def set(self, key: str, rendered_value: str) -> None:
        line = f"{key}: {rendered_value}"
        for idx, (name, _) in enumerate(self.entries):
            if name == key:
                self.entries[idx] = (key, [line])
                return
        self.entries.append((key, [line]))

    def asset_ids(self) -> list[str]:
        ids: list[str] = []
        lines = self._entry("asset_ids")
        if lines is not None:
            match = KEY_LINE.match(lines[0])
            inline = match.group(2).strip() if match else ""
            if inline:
                ids.extend(_parse_flow_list(inline))
            else:
                for extra in lines[1:]:
                    item = BLOCK_ITEM.match(extra)
                    if item and _unquote(item.group(1)):
                        ids.append(_unquote(item.group(1)))
        legacy = self.get("asset_id")
        if legacy:
            ids.append(legacy)
        return list(dict.fromkeys(ids))

    def merge_asset_id(self, asset_id: str) -> list[str]:
        merged = list(dict.fromkeys(self.asset_ids() + [asset_id]))
        self.set("asset_ids", json.dumps(merged, ensure_ascii=False))
        return merged

    def render(self) -> str:
        lines = [DELIMITER]
        for _, entry_lines in self.entries:
            lines.extend(entry_lines)
        lines.append(DELIMITER)
        return "\n".join(lines) + "\n"


def new_frontmatter(title: str, category: str, captured: datetime, asset_ids: list[str]) -> Frontmatter:
    fm = Frontmatter()
    fm.set("title", quote(title))
    fm.set("category", quote(category))
    fm.set("captured", iso_utc(captured))
    fm.set("asset_ids", json.dumps(list(dict.fromkeys(asset_ids)), ensure_ascii=False))
    return fm


def split_document(text: str) -> tuple[Frontmatter | None, str]:
    """Split a note into its frontmatter block (if any) and body."""
    normalized = text.lstrip("\ufeff").replace("\r\n", "\n")
    lines = normalized.split("\n")
    if not lines or lines[0].strip() != DELIMITER:
        return None, normalized
    for idx in range(1, len(lines)):
        if lines[idx].strip() == DELIMITER:
            fm = Frontmatter.parse("\n".join(lines[1:idx]))
            body = "\n".join(lines[idx + 1 :])
            return fm, body.lstrip("\n")
    return None, normalized


def join_document(fm: Frontmatter, body: str) -> str:
    body = body.strip("\n")
    return fm.render() + "\n" + (body + "\n" if body else "")


def strip_leading_anchor(block: str, anchor: str | None) -> str:
    """Drop a repeated anchor heading from the top of an append block."""
    text = block.strip("\n")
    if not anchor:
        return text
    lines = text.split("\n")
    if lines and lines[0].strip() == anchor.strip():
        return "\n".join(lines[1:]).strip("\n")
    return text


def insert_block(body: str, block: str, anchor: str | None) -> str:
    """Insert ``block`` right after the ``anchor`` line, or at the end of ``body``.

    When the anchor is given but missing, the anchor line is appended first so
    the next write to the same section finds it.
    """
    block = strip_leading_anchor(block, anchor)
    existing = body.rstrip("\n")
    separator = "\n\n" if existing.strip() else ""

    if anchor and anchor.strip():
        target = anchor.strip()
        lines = existing.split("\n")
        for idx, line in enumerate(lines):
            if line.strip() == target:
                merged = lines[: idx + 1] + block.split("\n") + lines[idx + 1 :]
                return "\n".join(merged).rstrip("\n") + "\n"
        return f"{existing}{separator}{target}\n{block}\n"

    return f"{existing}{separator}{block}\n"


def new_document_body(title: str, content: str, anchor: str | None = None) -> str:
    content = strip_leading_anchor(content, anchor)
    if anchor and anchor.strip():
        return f"{anchor.strip()}\n{content}\n"
    if title:
        return f"# {title}\n\n{content}\n"
    return f"{content}\n"


def render_document(
    title: str,
    category: str,
    captured: datetime,
    asset_ids: list[str],
    content: str,
    anchor: str | None = None,
) -> str:
    fm = new_frontmatter(title, category, captured, asset_ids)
    return join_document(fm, new_document_body(title, content, anchor))
