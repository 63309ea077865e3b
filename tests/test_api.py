import io
import json
import tempfile
import threading
import unittest
from datetime import datetime, timezone
from pathlib import Path

from PIL import Image

from photo_crawler import api
from photo_crawler.anthropic_client import VisionTransport
from photo_crawler.config import CrawlerConfig
from photo_crawler.errors import ConfigError
from photo_crawler.markdown import split_document
from photo_crawler.models import (
    ExtractionCategoryRule,
    ExtractionResult,
    ItemProcessed,
    Photo,
    ScanStatus,
    TextObservation,
    WriteMode,
    WritePlan,
)
from photo_crawler.sources import PhotoSource
from photo_crawler.state import StateStore


def png_bytes():
    buf = io.BytesIO()
    Image.new("RGB", (64, 48), "white").save(buf, format="PNG")
    return buf.getvalue()


BOOK_LINES = [TextObservation(f"Lorem ipsum dolor sit amet {i}", 0.1, 0.9 - i * 0.05, 0.8, 0.04) for i in range(10)]


def book_recognizer(_data):
    return BOOK_LINES, 1000, 1000


def reply(content="Hello", mode="create", path="captures/book_notes/sapiens.md", append_to=None):
    return json.dumps(
        {
            "category": "booknote",
            "title": "Sapiens",
            "content": content,
            "write": {"mode": mode, "path": path, "append_to": append_to},
        }
    )


class FixedTransport(VisionTransport):
    def __init__(self, answer):
        self.answer = answer
        self.calls = 0

    def complete(self, *, system_prompt, user_prompt, image_bytes, media_type):
        self.calls += 1
        return self.answer


class ListSource(PhotoSource):
    def __init__(self, photos):
        self.photos = photos

    def list_candidates(self, exclude_ids):
        return [p for p in self.photos if p.id not in exclude_ids]


class ApiTestCase(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.vault = self.root / "vault"
        (self.vault / ".obsidian").mkdir(parents=True)
        self.cfg = CrawlerConfig(
            vault_path=self.vault,
            api_key="test-key",
            album_name="PhotoCrawler",
            state_dir=self.root / "state",
            categories=(ExtractionCategoryRule("BookNote", "Transcribe.", "One note per book."),),
        )
        self.image = self.root / "page.png"
        self.image.write_bytes(png_bytes())

    def tearDown(self):
        self._tmp.cleanup()


class ImageTestEntryPointTests(ApiTestCase):
    def test_classification_only(self):
        report = api.test_image(self.image, self.cfg, recognizer=book_recognizer)
        self.assertEqual(report.path, self.image.resolve())
        self.assertEqual(report.size_bytes, self.image.stat().st_size)
        self.assertTrue(report.classification.is_learning_content)
        self.assertTrue(report.classification.reason.startswith("Book page"))
        self.assertIsNone(report.extraction)
        self.assertEqual(report.preview, "")

    def test_extract_renders_preview_without_writing(self):
        transport = FixedTransport(reply())
        report = api.test_image(self.image, self.cfg, extract=True, transport=transport, recognizer=book_recognizer)

        self.assertEqual(transport.calls, 1)
        self.assertEqual(report.extraction.category, "BookNote")
        fm, body = split_document(report.preview)
        self.assertEqual(fm.asset_ids(), ["page.png"])
        self.assertIn("# Sapiens", body)
        self.assertIn("Hello", body)
        self.assertIsNone(report.saved_path)
        self.assertEqual(list(self.vault.rglob("*.md")), [])

    def test_save_writes_into_vault(self):
        report = api.test_image(
            self.image, self.cfg, save=True, transport=FixedTransport(reply()), recognizer=book_recognizer
        )
        self.assertEqual(report.saved_path, self.vault / "captures/book_notes/sapiens.md")
        fm, _ = split_document(report.saved_path.read_text(encoding="utf-8"))
        self.assertEqual(fm.asset_ids(), ["page.png"])
        self.assertEqual(report.preview, "")

    def test_skip_extraction_neither_previews_nor_saves(self):
        transport = FixedTransport(reply(content="", mode="skip", path=""))
        report = api.test_image(self.image, self.cfg, save=True, transport=transport, recognizer=book_recognizer)
        self.assertTrue(report.extraction.is_skip)
        self.assertEqual(report.preview, "")
        self.assertIsNone(report.saved_path)
        self.assertEqual(list(self.vault.rglob("*.md")), [])

    def test_extract_without_api_key(self):
        cfg = CrawlerConfig(vault_path=self.vault, api_key="", state_dir=self.root / "state")
        with self.assertRaises(ConfigError) as ctx:
            api.test_image(self.image, cfg, extract=True, recognizer=book_recognizer)
        self.assertIn("API key", str(ctx.exception))

    def test_save_requires_valid_vault(self):
        cfg = CrawlerConfig(vault_path=self.root / "not-a-vault", api_key="test-key", state_dir=self.root / "state")
        with self.assertRaises(ConfigError):
            api.test_image(self.image, cfg, save=True, transport=FixedTransport(reply()), recognizer=book_recognizer)

    def test_unreadable_file(self):
        with self.assertRaises(ConfigError):
            api.test_image(self.root / "missing.png", self.cfg, recognizer=book_recognizer)

    def test_preview_for_append_is_bare_block(self):
        extraction = ExtractionResult(
            "default", "", "- hola: hello", WritePlan(WriteMode.APPEND, "captures/es.md", "## 2026-02-07")
        )
        preview = api.preview_markdown(extraction, "P1")
        self.assertTrue(preview.startswith("## 2026-02-07"))
        self.assertIn("- hola: hello", preview)
        self.assertNotIn("asset_ids", preview)


class ScanFacadeTests(ApiTestCase):
    def photo(self):
        return Photo("P1", datetime(2026, 2, 7, 10, 0, tzinfo=timezone.utc), png_bytes())

    def test_scan_notifies_listener(self):
        events = []
        result = api.scan(
            self.cfg,
            listener=events.append,
            source=ListSource([self.photo()]),
            transport=FixedTransport(reply()),
            recognizer=book_recognizer,
        )
        self.assertEqual(result.status, ScanStatus.COMPLETED)
        self.assertEqual(result.photos_written, 1)
        self.assertEqual([e.asset_id for e in events if isinstance(e, ItemProcessed)], ["P1"])
        self.assertTrue(self.cfg.state_path.exists())

    def test_watch_runs_until_stopped(self):
        stop = threading.Event()
        results = []

        def on_result(result):
            results.append(result)
            stop.set()

        cycles = api.watch(
            self.cfg,
            stop,
            on_result=on_result,
            source=ListSource([self.photo()]),
            transport=FixedTransport(reply()),
            recognizer=book_recognizer,
        )
        self.assertEqual(cycles, 1)
        self.assertEqual(results[0].photos_written, 1)

    def test_status_reports_state(self):
        state = StateStore(self.cfg.state_path, load=False)
        state.mark_processed("P1")
        state.increment("written")
        info = api.status(self.cfg, state)
        self.assertEqual(info["processed"], 1)
        self.assertEqual(info["stats"]["written"], 1)
        self.assertIsNone(info["last_scan"])
        self.assertEqual(info["state_path"], str(self.cfg.state_path))


if __name__ == "__main__":
    unittest.main()
