import json
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from photo_crawler.errors import StateDecodeError
from photo_crawler.state import STAT_NAMES, StateStore


class StateStoreTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.path = Path(self._tmp.name) / "state" / "state.json"

    def tearDown(self):
        self._tmp.cleanup()

    def test_missing_file_is_fresh_state(self):
        store = StateStore(self.path)
        self.assertEqual(store.processed_count(), 0)
        self.assertEqual(store.stats(), {name: 0 for name in STAT_NAMES})
        self.assertIsNone(store.last_scan_time)
        self.assertFalse(self.path.exists())

    def test_save_and_reload(self):
        store = StateStore(self.path)
        store.mark_processed("b")
        store.mark_processed("a")
        store.mark_processed("a")
        store.increment("scanned")
        store.increment("scanned")
        store.increment("written")
        store.last_scan_time = datetime(2026, 2, 7, 10, 0, tzinfo=timezone.utc)
        store.save()

        data = json.loads(self.path.read_text(encoding="utf-8"))
        self.assertEqual(data["processed_ids"], ["a", "b"])
        self.assertEqual(set(data["stats"]), set(STAT_NAMES))
        self.assertEqual(data["last_scan_date"], "2026-02-07T10:00:00Z")

        reloaded = StateStore(self.path)
        self.assertTrue(reloaded.is_processed("a"))
        self.assertFalse(reloaded.is_processed("c"))
        self.assertEqual(reloaded.stats()["scanned"], 2)
        self.assertEqual(reloaded.stats()["written"], 1)
        self.assertEqual(reloaded.last_scan_time, datetime(2026, 2, 7, 10, 0, tzinfo=timezone.utc))

    def test_last_scan_omitted_until_set(self):
        store = StateStore(self.path)
        store.save()
        self.assertNotIn("last_scan_date", json.loads(self.path.read_text(encoding="utf-8")))

    def test_corrupt_file_raises(self):
        self.path.parent.mkdir(parents=True)
        self.path.write_text("{not json", encoding="utf-8")
        with self.assertRaises(StateDecodeError):
            StateStore(self.path)
        fresh = StateStore(self.path, load=False)
        self.assertEqual(fresh.processed_count(), 0)

    def test_wrong_shape_raises(self):
        self.path.parent.mkdir(parents=True)
        self.path.write_text(json.dumps({"processed_ids": "abc"}), encoding="utf-8")
        with self.assertRaises(StateDecodeError):
            StateStore(self.path)

    def test_unknown_counter(self):
        with self.assertRaises(KeyError):
            StateStore(self.path).increment("bogus")

    def test_save_to_unwritable_location_raises_oserror(self):
        blocker = Path(self._tmp.name) / "blocker"
        blocker.write_text("file, not a directory", encoding="utf-8")
        store = StateStore(blocker / "state.json")
        with self.assertRaises(OSError):
            store.save()


if __name__ == "__main__":
    unittest.main()
