from __future__ import annotations

import datetime as dt
import os
import stat
import tempfile
import time
import unittest
from pathlib import Path
from unittest import mock

from dirsnap import atomic
from dirsnap.backup import create_backup, resolve_backup_dir
from dirsnap.compare import are_files_identical
from dirsnap.config import Config
from dirsnap.context import OperationContext
from dirsnap.errors import CancelledError, InvalidTypeError, NotFoundError, SnapshotExistsError
from dirsnap.snapshot import Status, find_most_recent_backup, list_backups


T1 = dt.datetime(2024, 5, 6, 7, 8)
T2 = dt.datetime(2024, 5, 6, 7, 9)
T3 = dt.datetime(2024, 5, 6, 7, 10)


class BackupTests(unittest.TestCase):
    def setUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.workspace = Path(tmp.name)
        self.cwd = self.workspace / "proj"
        (self.cwd / "conf").mkdir(parents=True)
        self.source = self.cwd / "conf" / "settings.yml"
        self.source.write_text("key: value\n")
        os.chmod(self.source, 0o640)
        past = time.time() - 3600
        os.utime(self.source, (past, past))
        self.store = self.workspace / "backups"
        self.config = Config(backup_dir_path=str(self.store))
        self.backup_dir = self.store / "conf"

    def backup(self, **kw):
        kw.setdefault("config", self.config)
        kw.setdefault("cwd", str(self.cwd))
        kw.setdefault("now", T1)
        return create_backup(str(self.source), **kw)

    def test_backup_copies_content_and_metadata(self):
        out = self.backup(note="before-upgrade")
        self.assertEqual(out.status, Status.CREATED)
        path = Path(out.path)
        self.assertEqual(path.parent, self.backup_dir)
        self.assertEqual(path.name, "settings.yml-2024-05-06-07-08=before-upgrade")
        self.assertEqual(path.read_bytes(), self.source.read_bytes())
        src_st = os.stat(self.source)
        dst_st = os.stat(path)
        self.assertEqual(stat.S_IMODE(dst_st.st_mode), stat.S_IMODE(src_st.st_mode))
        self.assertAlmostEqual(dst_st.st_mtime, src_st.st_mtime, places=3)
        self.assertFalse(any(p.name.endswith(".tmp") for p in self.backup_dir.iterdir()))

    def test_second_unchanged_backup_is_identical(self):
        first = self.backup()
        second = self.backup(now=T2)
        self.assertEqual(second.status, Status.IDENTICAL)
        self.assertEqual(second.path, first.path)
        self.assertEqual(len(list(self.backup_dir.iterdir())), 1)

    def test_changed_file_gets_new_backup(self):
        first = self.backup()
        self.source.write_text("key: other\n")
        os.utime(self.source, None)
        second = self.backup(now=T2)
        self.assertEqual(second.status, Status.CREATED)
        backups = list_backups(str(self.backup_dir), str(self.source))
        self.assertEqual([b.path for b in backups], [second.path, first.path])
        self.assertEqual(find_most_recent_backup(str(self.backup_dir), str(self.source)).path, second.path)

    def test_source_mtime_moving_backwards(self):
        first = self.backup()
        self.source.write_text("key: restored from an old tarball\n")
        old = dt.datetime(2000, 1, 1).timestamp()
        os.utime(self.source, (old, old))
        second = self.backup(now=T2)
        self.assertEqual(second.status, Status.CREATED)
        latest = find_most_recent_backup(str(self.backup_dir), str(self.source))
        self.assertEqual(latest.path, second.path)
        self.assertEqual(latest.created_at, T2)
        third = self.backup(now=T3)
        self.assertEqual(third.status, Status.IDENTICAL)
        self.assertEqual(third.path, second.path)
        self.assertEqual([b.path for b in list_backups(str(self.backup_dir), str(self.source))], [second.path, first.path])

    def test_changed_file_in_same_minute_keeps_first_backup(self):
        first = self.backup()
        self.source.write_text("key: changed quickly\n")
        with self.assertRaises(SnapshotExistsError):
            self.backup()
        self.assertEqual(Path(first.path).read_text(), "key: value\n")
        self.assertEqual([p.name for p in self.backup_dir.iterdir()], [Path(first.path).name])

    def test_listing_ignores_other_files(self):
        self.backup()
        (self.backup_dir / "settings.yml.orig").write_text("x")
        (self.backup_dir / "other.yml-2024-05-06-07-08").write_text("x")
        names = [b.name for b in list_backups(str(self.backup_dir), str(self.source))]
        self.assertEqual(names, ["settings.yml-2024-05-06-07-08"])
        self.assertIsNone(find_most_recent_backup(str(self.workspace / "missing"), str(self.source)))

    def test_dry_run(self):
        out = self.backup(dry_run=True)
        self.assertEqual(out.status, Status.DRY_RUN)
        self.assertFalse(self.store.exists())

    def test_flat_layout_without_dir_name(self):
        config = Config(backup_dir_path=str(self.store), use_current_dir_name_for_files=False)
        self.assertEqual(resolve_backup_dir(str(self.source), config, str(self.cwd)), str(self.store))

    def test_file_outside_cwd_mirrors_absolute_dir(self):
        other = self.workspace / "elsewhere"
        other.mkdir()
        target = resolve_backup_dir(str(other / "f.txt"), self.config, str(self.cwd))
        self.assertEqual(target, os.path.normpath(str(self.store) + str(other)))

    def test_validation(self):
        with self.assertRaises(NotFoundError):
            create_backup(str(self.cwd / "missing.txt"), config=self.config, cwd=str(self.cwd))
        with self.assertRaises(InvalidTypeError):
            create_backup(str(self.cwd / "conf"), config=self.config, cwd=str(self.cwd))

    def test_cancelled_copy_leaves_nothing(self):
        ctx = OperationContext()
        ctx.cancel()
        with self.assertRaises(CancelledError):
            self.backup(ctx=ctx)
        self.assertFalse(self.backup_dir.exists() and any(self.backup_dir.iterdir()))

    def test_cancel_during_copy(self):
        self.source.write_bytes(os.urandom(300 * 1024))
        ctx = OperationContext()
        real_read_sizes = []

        original = atomic.copy_stream

        def cancelling_copy(src, dst, c=None, **kw):
            class Reader:
                def read(self, n):
                    buf = src.read(n)
                    real_read_sizes.append(len(buf))
                    ctx.cancel("stop")
                    return buf

            return original(Reader(), dst, c, **kw)

        with mock.patch.object(atomic, "copy_stream", side_effect=cancelling_copy):
            with self.assertRaises(CancelledError):
                self.backup(ctx=ctx)
        self.assertEqual(len(real_read_sizes), 1)
        self.assertEqual(list(self.backup_dir.iterdir()), [])


class FileCompareTests(unittest.TestCase):
    def test_sizes_then_bytes(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            a, b, c = root / "a", root / "b", root / "c"
            a.write_bytes(b"x" * 10000)
            b.write_bytes(b"x" * 10000)
            c.write_bytes(b"x" * 9999 + b"y")
            self.assertTrue(are_files_identical(str(a), str(b)))
            self.assertFalse(are_files_identical(str(a), str(c)))
            self.assertFalse(are_files_identical(str(a), str(root / "missing")))
            (root / "short").write_bytes(b"x")
            with mock.patch("builtins.open", side_effect=AssertionError("content read despite size mismatch")):
                self.assertFalse(are_files_identical(str(a), str(root / "short")))


if __name__ == "__main__":
    unittest.main()
