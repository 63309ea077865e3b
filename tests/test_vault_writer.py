import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from photo_crawler.errors import WriteFSError
from photo_crawler.markdown import split_document
from photo_crawler.models import ExtractionResult, WriteMode, WritePlan
from photo_crawler.vault_writer import VaultWriter, default_relative_path, sanitize_plan_path

CAPTURED = datetime(2026, 2, 7, 10, 0, tzinfo=timezone.utc)


def extraction(content="Hello", mode=WriteMode.CREATE, path="", append_to=None, category="BookNote", title="Sapiens"):
    return ExtractionResult(
        category=category,
        title=title,
        content=content,
        write_plan=WritePlan(mode=mode, path=path, append_to=append_to),
    )


class VaultWriterTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.vault = Path(self._tmp.name)
        (self.vault / ".obsidian").mkdir()
        self.writer = VaultWriter(self.vault)

    def tearDown(self):
        self._tmp.cleanup()

    def read(self, relative):
        return (self.vault / relative).read_text(encoding="utf-8")

    def ids(self, relative):
        fm, _ = split_document(self.read(relative))
        return fm.asset_ids()

    def test_create_writes_note(self):
        rel = self.writer.write(extraction(path="captures/book_notes/sapiens.md"), CAPTURED, "X1")
        self.assertEqual(rel, "captures/book_notes/sapiens.md")
        text = self.read(rel)
        self.assertIn("Hello", text)
        self.assertIn('asset_ids: ["X1"]', text)
        self.assertIn("captured: 2026-02-07T10:00:00Z", text)

    def test_create_never_overwrites(self):
        first = self.writer.write(extraction(content="one", path="captures/foo.md"), CAPTURED, "a")
        second = self.writer.write(extraction(content="two", path="captures/foo.md"), CAPTURED, "b")
        third = self.writer.write(extraction(content="three", path="captures/foo.md"), CAPTURED, "c")
        self.assertEqual((first, second, third), ("captures/foo.md", "captures/foo-2.md", "captures/foo-3.md"))
        self.assertIn("one", self.read(first))
        self.assertIn("two", self.read(second))
        self.assertNotIn("one", self.read(second))

    def test_unsafe_paths_fall_back_to_default(self):
        expected = "captures/booknote/X1.md"
        for bad in ("../escape.md", "/etc/passwd", "~/notes.md", "captures/../../x.md", "captures/a/../b.md"):
            self.assertEqual(self.writer.resolve_path(extraction(path=bad), "X1"), expected, bad)
        rel = self.writer.write(extraction(path="../../outside.md"), CAPTURED, "X1")
        self.assertEqual(rel, expected)
        self.assertFalse((self.vault.parent / "outside.md").exists())

    def test_paths_are_normalized(self):
        self.assertEqual(sanitize_plan_path("notes/foo"), "captures/notes/foo.md")
        self.assertEqual(sanitize_plan_path('captures/a:b/c?"d.md'), "captures/ab/cd.md")
        self.assertEqual(sanitize_plan_path("./captures//x.md"), "captures/x.md")
        self.assertIsNone(sanitize_plan_path("captures/???/x.md"))
        self.assertIsNone(sanitize_plan_path("captures/.md"))

    def test_captures_prefix_matched_case_insensitively(self):
        self.assertEqual(sanitize_plan_path("Captures/x.md"), "captures/x.md")
        self.assertEqual(sanitize_plan_path("CAPTURES/books/y"), "captures/books/y.md")

    def test_default_paths(self):
        self.assertEqual(default_relative_path("default", "A1/L0/001"), "captures/notes/unknown/A1L0001.md")
        self.assertEqual(default_relative_path("", "x"), "captures/notes/unknown/x.md")
        self.assertEqual(default_relative_path("Book Note", "x"), "captures/book-note/x.md")
        self.assertEqual(default_relative_path("default", "///"), "captures/notes/unknown/untitled.md")
        rel = self.writer.write(extraction(category="default"), CAPTURED, "A1/L0/001")
        self.assertEqual(rel, "captures/notes/unknown/A1L0001.md")

    def test_append_after_existing_anchor(self):
        target = self.vault / "captures/languages/spanish/202602.md"
        target.parent.mkdir(parents=True)
        target.write_text(
            '---\ntitle: "Spanish"\nasset_ids: ["OLD"]\n---\n\n# Spanish\n\n## 2026-02-07\n- hola = hello\n',
            encoding="utf-8",
        )
        rel = self.writer.write(
            extraction(
                content="- gato = cat",
                mode=WriteMode.APPEND,
                path="captures/languages/spanish/202602.md",
                append_to="## 2026-02-07",
            ),
            CAPTURED,
            "NEW",
        )
        text = self.read(rel)
        self.assertIn("## 2026-02-07\n- gato = cat\n- hola = hello\n", text)
        self.assertEqual(self.ids(rel), ["OLD", "NEW"])
        self.assertIn('title: "Spanish"', text)

    def test_append_to_missing_file_creates_it(self):
        rel = self.writer.write(
            extraction(content="- a", mode=WriteMode.APPEND, path="captures/log.md", append_to="## Day"),
            CAPTURED,
            "a",
        )
        fm, body = split_document(self.read(rel))
        self.assertEqual(fm.asset_ids(), ["a"])
        self.assertEqual(body, "## Day\n- a\n")

    def test_append_synthesizes_missing_frontmatter(self):
        target = self.vault / "captures/plain.md"
        target.parent.mkdir(parents=True)
        target.write_text("# Plain\n\nold text\n", encoding="utf-8")
        self.writer.write(extraction(content="new", mode=WriteMode.APPEND, path="captures/plain.md"), CAPTURED, "p1")
        fm, body = split_document(self.read("captures/plain.md"))
        self.assertEqual(fm.asset_ids(), ["p1"])
        self.assertEqual(fm.get("title"), "Sapiens")
        self.assertEqual(body, "# Plain\n\nold text\n\nnew\n")

    def test_upsert_union_invariant(self):
        path = "captures/books/sapiens.md"
        for asset_id in ("a1", "a2", "a1", "a3", "a2"):
            self.writer.write(
                extraction(content=f"from {asset_id}", mode=WriteMode.UPSERT, path=path, append_to="## Highlights"),
                CAPTURED,
                asset_id,
            )
        ids = self.ids(path)
        self.assertEqual(sorted(ids), ["a1", "a2", "a3"])
        self.assertEqual(len(ids), len(set(ids)))
        self.assertEqual(self.read(path).count("## Highlights"), 1)

    def test_upsert_fills_missing_keys(self):
        target = self.vault / "captures/books/x.md"
        target.parent.mkdir(parents=True)
        target.write_text("---\ntags: [book]\n---\nbody\n", encoding="utf-8")
        self.writer.write(extraction(mode=WriteMode.UPSERT, path="captures/books/x.md"), CAPTURED, "u1")
        fm, _ = split_document(self.read("captures/books/x.md"))
        self.assertEqual(fm.get("title"), "Sapiens")
        self.assertEqual(fm.get("category"), "BookNote")
        self.assertEqual(fm.get("captured"), "2026-02-07T10:00:00Z")
        self.assertTrue(fm.has("tags"))

    def test_skip_writes_nothing(self):
        self.assertIsNone(self.writer.write(extraction(content="", mode=WriteMode.SKIP), CAPTURED, "s"))
        self.assertFalse(self.writer.captures_root.exists())

    def test_existing_asset_ids_scans_whole_tree(self):
        self.assertEqual(self.writer.existing_asset_ids(), set())
        self.writer.write(extraction(path="captures/a.md"), CAPTURED, "A")
        self.writer.write(extraction(path="captures/deep/b.md"), CAPTURED, "B")
        legacy = self.vault / "captures/old/legacy.md"
        legacy.parent.mkdir(parents=True)
        legacy.write_text("---\nasset_id: L\n---\nold\n", encoding="utf-8")
        (self.vault / "captures/nofm.md").write_text("no frontmatter\n", encoding="utf-8")
        (self.vault / "outside.md").write_text('---\nasset_ids: ["OUT"]\n---\n', encoding="utf-8")
        self.assertEqual(self.writer.existing_asset_ids(), {"A", "B", "L"})

    def test_filesystem_error_is_write_error(self):
        (self.vault / "captures/dir.md").mkdir(parents=True)
        with self.assertRaises(WriteFSError):
            self.writer.write(extraction(mode=WriteMode.APPEND, path="captures/dir.md"), CAPTURED, "x")


if __name__ == "__main__":
    unittest.main()
