from __future__ import annotations

import datetime as dt
import unittest

from dirsnap.naming import (
    NamingInfo,
    backup_name,
    format_timestamp,
    full_archive_name,
    incremental_archive_name,
    is_incremental_name,
    parse_archive_name,
    parse_backup_name,
)


TS = "2024-03-15-14-30"


class NamingTests(unittest.TestCase):
    def test_timestamp_format(self):
        self.assertEqual(format_timestamp(dt.datetime(2024, 3, 15, 14, 30, 59)), TS)

    def test_full_names(self):
        self.assertEqual(full_archive_name(TS), TS + ".zip")
        self.assertEqual(full_archive_name(TS, NamingInfo(prefix="proj")), "proj-" + TS + ".zip")
        self.assertEqual(full_archive_name(TS, NamingInfo(prefix="proj"), note="release"), "proj-" + TS + "=release.zip")
        info = NamingInfo(prefix="proj", branch="main", commit="abc1234")
        self.assertEqual(full_archive_name(TS, info), "proj-" + TS + "=main=abc1234.zip")
        self.assertEqual(full_archive_name(TS, info, "rc1"), "proj-" + TS + "=main=abc1234=rc1.zip")

    def test_partial_vcs_info_is_ignored(self):
        self.assertFalse(NamingInfo(branch="main").has_vcs)
        self.assertEqual(full_archive_name(TS, NamingInfo(prefix="p", branch="main")), "p-" + TS + ".zip")

    def test_incremental_names(self):
        base = "proj-2024-03-01-09-00.zip"
        name = incremental_archive_name(base, TS)
        self.assertEqual(name, "proj-2024-03-01-09-00_update=" + TS + ".zip")
        self.assertTrue(is_incremental_name(name))
        self.assertFalse(is_incremental_name(base))
        self.assertEqual(
            incremental_archive_name("proj-2024-03-01-09-00", TS, note="fix"),
            "proj-2024-03-01-09-00_update=" + TS + "=fix.zip",
        )

    def test_backup_names(self):
        self.assertEqual(backup_name("/work/dir/main.go", TS), "main.go-" + TS)
        self.assertEqual(backup_name("main.go", TS, "before refactor"), "main.go-" + TS + "=before refactor")

    def test_parse_full(self):
        info = NamingInfo(prefix="my-proj", branch="feature", commit="deadbee")
        parsed = parse_archive_name(full_archive_name(TS, info, "wip"))
        self.assertEqual(parsed.prefix, "my-proj")
        self.assertEqual(parsed.timestamp, TS)
        self.assertEqual((parsed.branch, parsed.commit, parsed.note), ("feature", "deadbee", "wip"))
        self.assertFalse(parsed.is_incremental)

        parsed = parse_archive_name(TS + "=note.zip")
        self.assertEqual((parsed.prefix, parsed.note, parsed.branch), ("", "note", ""))

    def test_parse_incremental(self):
        parsed = parse_archive_name("proj-2024-03-01-09-00_update=" + TS + "=fix.zip")
        self.assertTrue(parsed.is_incremental)
        self.assertEqual(parsed.base_name, "proj-2024-03-01-09-00.zip")
        self.assertEqual(parsed.timestamp, TS)
        self.assertEqual(parsed.note, "fix")

    def test_parse_rejects_foreign_names(self):
        for name in ("notes.txt", "random.zip", "proj" + TS + ".zip", "proj-" + TS + "x.zip", "a_update=nope.zip"):
            with self.subTest(name=name):
                self.assertIsNone(parse_archive_name(name))

    def test_parse_backup(self):
        parsed = parse_backup_name("main.go-" + TS + "=before", "main.go")
        self.assertEqual(parsed.timestamp, TS)
        self.assertEqual(parsed.note, "before")
        self.assertEqual(parse_backup_name("main.go-" + TS, "main.go").note, "")
        self.assertIsNone(parse_backup_name("other.go-" + TS, "main.go"))
        self.assertIsNone(parse_backup_name("main.go-2024", "main.go"))
        self.assertIsNone(parse_backup_name("main.go-" + TS + "x", "main.go"))


if __name__ == "__main__":
    unittest.main()
