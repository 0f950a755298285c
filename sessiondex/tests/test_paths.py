import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from sessiondex.paths import (
    decode_project_dir,
    expand_path,
    get_discovery_roots,
    is_temp_project_dir,
    session_id_from_filename,
    should_exclude,
    validate_session_id,
)


class ExpandPathTests(unittest.TestCase):
    def test_expands_home_and_env_vars(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            with patch.dict(os.environ, {"HOME": tmp, "SDX_SUB": "logs"}):
                self.assertEqual(expand_path("~/projects"), Path(tmp) / "projects")
                self.assertEqual(expand_path("$HOME/${SDX_SUB}/x"), Path(tmp) / "logs" / "x")

    def test_normalizes_dot_segments(self) -> None:
        self.assertEqual(expand_path("/a/b/../c/./d"), Path("/a/c/d"))

    def test_empty_path_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            expand_path("   ")

    def test_path_outside_allowed_bases_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            expand_path("/etc/passwd", allowed_bases=[Path("/tmp")])
        self.assertEqual(expand_path("/tmp/x/y", allowed_bases=[Path("/tmp")]), Path("/tmp/x/y"))


class ShouldExcludeTests(unittest.TestCase):
    def test_exact_and_descendant_matches(self) -> None:
        self.assertTrue(should_exclude("/data/private", ["/data/private"]))
        self.assertTrue(should_exclude("/data/private/a/b", ["/data/private"]))

    def test_sibling_with_common_prefix_is_not_excluded(self) -> None:
        self.assertFalse(should_exclude("/data/private-notes", ["/data/private"]))

    def test_glob_suffix_patterns(self) -> None:
        self.assertTrue(should_exclude("/data/archive/old", ["/data/archive/*"]))
        self.assertTrue(should_exclude("/data/archive/old/deeper", ["/data/archive/**"]))
        self.assertFalse(should_exclude("/data/other", ["/data/archive/**"]))

    def test_blank_entries_are_ignored(self) -> None:
        self.assertFalse(should_exclude("/data/x", ["", "   "]))


class DiscoveryRootTests(unittest.TestCase):
    def test_primary_additional_dedup_and_exclusions(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            base = Path(tmp).resolve()
            primary = base / "projects"
            extra = base / "extra"
            excluded = base / "excluded"
            for directory in (primary, extra, excluded):
                directory.mkdir()
            alias = base / "extra-link"
            alias.symlink_to(extra, target_is_directory=True)
            a_file = base / "file.txt"
            a_file.write_text("x")

            roots = get_discovery_roots(
                str(primary),
                [str(extra), str(alias), str(excluded), str(base / "missing"), str(a_file), ""],
                [str(excluded)],
            )

        self.assertEqual(roots, [primary, extra])

    def test_primary_root_is_kept_even_when_missing(self) -> None:
        roots = get_discovery_roots("/nonexistent/sessiondex/projects")
        self.assertEqual(roots, [Path("/nonexistent/sessiondex/projects")])


class SessionNamingTests(unittest.TestCase):
    def test_only_uuid_jsonl_names_are_sessions(self) -> None:
        self.assertEqual(
            session_id_from_filename("/x/3F2504E0-4F89-11D3-9A0C-0305E82C3301.jsonl"),
            "3f2504e0-4f89-11d3-9a0c-0305e82c3301",
        )
        self.assertIsNone(session_id_from_filename("/x/notes.jsonl"))
        self.assertIsNone(session_id_from_filename("/x/3f2504e0-4f89-11d3-9a0c-0305e82c3301.json"))

    def test_validate_session_id(self) -> None:
        self.assertTrue(validate_session_id("abc-DEF_123"))
        self.assertFalse(validate_session_id("../etc"))
        self.assertFalse(validate_session_id(""))
        self.assertFalse(validate_session_id("a" * 201))

    def test_temp_project_dirs(self) -> None:
        self.assertTrue(is_temp_project_dir("-private-var-folders-xy-T-tmp123"))
        self.assertTrue(is_temp_project_dir("-Users-alice-tmp-scratch"))
        self.assertFalse(is_temp_project_dir("-Users-alice-dev-app"))

    def test_decode_project_dir(self) -> None:
        self.assertEqual(decode_project_dir("-Users-alice-dev-app"), "/Users/alice/dev/app")
        self.assertEqual(decode_project_dir("-home-bob-code"), "/home/bob/code")


if __name__ == "__main__":
    unittest.main()
