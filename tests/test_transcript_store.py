import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from backend.mindmap_types import TranscriptTurn
from backend.transcript_store import JsonTranscriptRepository


class TestJsonTranscriptRepository(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.base = Path(self._tmp.name)

    def tearDown(self):
        self._tmp.cleanup()

    def test_rows_survive_reload_in_order(self):
        repo = JsonTranscriptRepository(self.base)
        repo.add_transcript("s1", "Alice", "We need a Q4 budget", start_at=1700000000)
        repo.add_transcript("s1", "Bob", "Agreed", start_at=1700000005)
        repo.add_transcript("s2", "Carol", "Other meeting")

        reloaded = JsonTranscriptRepository(self.base)
        rows = reloaded.get_all_transcripts_by_session_id("s1")

        self.assertEqual(
            rows,
            [
                TranscriptTurn("Alice", "We need a Q4 budget", 1700000000),
                TranscriptTurn("Bob", "Agreed", 1700000005),
            ],
        )
        self.assertEqual(len(reloaded.get_all_transcripts_by_session_id("s2")), 1)

    def test_default_start_at_is_epoch_seconds(self):
        repo = JsonTranscriptRepository(self.base)
        turn = repo.add_transcript("s1", "Alice", "hello")
        self.assertIsInstance(turn.start_at, int)
        self.assertGreater(turn.start_at, 1_600_000_000)

    def test_unknown_session_is_empty(self):
        self.assertEqual(JsonTranscriptRepository(self.base).get_all_transcripts_by_session_id("none"), [])

    def test_failed_write_leaves_cached_rows_unchanged(self):
        repo = JsonTranscriptRepository(self.base)
        repo.add_transcript("s1", "Alice", "hello", start_at=1)

        with patch.object(Path, "replace", side_effect=OSError("disk full")):
            with self.assertRaises(OSError):
                repo.add_transcript("s1", "Bob", "lost", start_at=2)

        self.assertEqual(repo.get_all_transcripts_by_session_id("s1"), [TranscriptTurn("Alice", "hello", 1)])
        self.assertEqual(
            JsonTranscriptRepository(self.base).get_all_transcripts_by_session_id("s1"),
            [TranscriptTurn("Alice", "hello", 1)],
        )

    def test_turn_from_row_shapes(self):
        self.assertEqual(TranscriptTurn.from_row({"speaker": None, "text": "x"}), TranscriptTurn("", "x", None))
        obj = type("Row", (), {"speaker": "A", "text": "y", "start_at": 5})()
        self.assertEqual(TranscriptTurn.from_row(obj), TranscriptTurn("A", "y", 5))


if __name__ == "__main__":
    unittest.main()
