import hashlib
import json
import tempfile
import unittest
from pathlib import Path

from sessiondex.parsers.sessions import parse_events, parse_session_file

SESSION = "4f1c2d3e-aaaa-4bbb-8ccc-0123456789ab"


class SessionParserTests(unittest.TestCase):
    def _write_jsonl(self, lines: list, relative_path: str = f"-Users-alice-dev-app/{SESSION}.jsonl") -> Path:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        path = Path(tmpdir.name) / relative_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(
            "\n".join(line if isinstance(line, str) else json.dumps(line) for line in lines),
            encoding="utf-8",
        )
        return path

    def test_counts_messages_and_time_span(self) -> None:
        path = self._write_jsonl([
            {"type": "summary", "summary": "Earlier work"},
            {"type": "user", "cwd": "/Users/alice/dev/app", "timestamp": "2026-02-16T10:00:00Z",
             "message": {"role": "user", "content": "Add a health endpoint"}},
            {"type": "assistant", "timestamp": "2026-02-16T10:05:30Z",
             "message": {"role": "assistant", "content": [{"type": "text", "text": "Done."}]}},
            {"type": "user", "timestamp": "2026-02-16T10:02:00Z",
             "message": {"role": "user", "content": "Also add a test"}},
        ])
        parsed = parse_session_file(path)
        record = parsed.record

        self.assertEqual(record.sessionId, SESSION)
        self.assertEqual(record.projectPath, "/Users/alice/dev/app")
        self.assertEqual(record.projectName, "app")
        self.assertEqual((record.messageCount, record.userMessageCount, record.assistantMessageCount), (3, 2, 1))
        self.assertEqual(record.firstMessageTime, "2026-02-16T10:00:00Z")
        self.assertEqual(record.lastMessageTime, "2026-02-16T10:05:30Z")
        self.assertEqual(record.sessionDurationSeconds, 330)
        self.assertEqual(record.fileSize, path.stat().st_size)
        self.assertEqual(record.contentHash, hashlib.sha256(path.read_bytes()).hexdigest())
        self.assertFalse(record.isEmpty)
        self.assertEqual(len(parsed.events), 4)

    def test_project_path_falls_back_to_folder_name(self) -> None:
        path = self._write_jsonl([{"type": "user", "message": {"role": "user", "content": "hi"}}])
        self.assertEqual(parse_session_file(path).record.projectPath, "/Users/alice/dev/app")

    def test_malformed_lines_are_skipped(self) -> None:
        path = self._write_jsonl([
            '{"type": "user", "message": {"role": "user", "content": "hi"}}',
            "{not json",
            "[1, 2]",
            "",
        ])
        parsed = parse_session_file(path)
        self.assertEqual(parsed.skipped_lines, 2)
        self.assertEqual(parsed.record.messageCount, 1)

    def test_empty_file_is_invalid_and_empty(self) -> None:
        path = self._write_jsonl([])
        record = parse_session_file(path).record
        self.assertFalse(record.isValid)
        self.assertTrue(record.isEmpty)
        self.assertEqual(record.sessionDurationSeconds, 0)

    def test_non_session_filename_is_ignored(self) -> None:
        path = self._write_jsonl([{"type": "user"}], relative_path="-work-app/history.jsonl")
        self.assertIsNone(parse_session_file(path))

    def test_passed_content_is_used_for_the_fingerprint(self) -> None:
        path = self._write_jsonl([{"type": "user"}])
        content = b'{"type": "assistant"}\n'
        record = parse_session_file(path, content).record
        self.assertEqual(record.contentHash, hashlib.sha256(content).hexdigest())
        self.assertEqual(record.assistantMessageCount, 1)

    def test_parse_events_counts_non_object_lines(self) -> None:
        events, skipped = parse_events('{"a": 1}\n"text"\n\n{"b": 2}\n')
        self.assertEqual(events, [{"a": 1}, {"b": 2}])
        self.assertEqual(skipped, 1)


if __name__ == "__main__":
    unittest.main()
