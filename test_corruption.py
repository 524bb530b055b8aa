from __future__ import annotations

import os
import shutil
import tempfile
import unittest
import zipfile
from pathlib import Path

from dirsnap.constants import CORRUPTION_BACKUP_SUFFIX
from dirsnap.corruption import (
    FATAL_TYPES,
    RECOVERABLE_TYPES,
    ArchiveCorruptor,
    CorruptionConfig,
    CorruptionRecord,
    CorruptionType,
    apply_corruption,
    classify_corruption,
    corrupted,
    create_test_archive,
    detect_corruption,
    restore_corruption,
)
from dirsnap.errors import CorruptionInjectionError
from dirsnap.prng import DeterministicPRNG
from dirsnap.verify import verify_archive


FILES = {
    "docs/readme.txt": b"hello world\n" * 200,
    "data/values.csv": b"".join(b"%d,%d\n" % (i, i * i) for i in range(500)),
    "empty.txt": b"",
    "notes.md": b"# notes\n\nsome text\n",
}


class CorruptionTests(unittest.TestCase):
    def setUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.root = Path(tmp.name)
        self.archive = str(self.root / "sample.zip")
        create_test_archive(self.archive, FILES)
        self.pristine = Path(self.archive).read_bytes()

    def copy(self, name: str) -> str:
        dst = str(self.root / name)
        shutil.copyfile(self.archive, dst)
        return dst

    def test_clean_archive(self):
        self.assertEqual(detect_corruption(self.archive), [])
        report = classify_corruption(self.archive)
        self.assertTrue(report.clean)
        self.assertFalse(report.fatal)
        self.assertFalse(report.recoverable)

    def test_each_type_is_detected_as_itself(self):
        for ctype in CorruptionType:
            with self.subTest(type=ctype):
                path = self.copy(f"{ctype.value}.zip")
                record = apply_corruption(path, CorruptionConfig(ctype, seed=7))
                self.assertEqual(detect_corruption(path), [ctype])
                self.assertEqual(record.recoverable, ctype in RECOVERABLE_TYPES)
                report = classify_corruption(path)
                self.assertEqual(report.fatal, ctype in FATAL_TYPES)
                self.assertEqual(report.recoverable, ctype in RECOVERABLE_TYPES)

    def test_restore_round_trip(self):
        for ctype in CorruptionType:
            with self.subTest(type=ctype):
                record = apply_corruption(self.archive, CorruptionConfig(ctype, seed=3, severity=0.25))
                self.assertNotEqual(Path(self.archive).read_bytes(), self.pristine)
                self.assertTrue(os.path.exists(self.archive + CORRUPTION_BACKUP_SUFFIX))
                restore_corruption(self.archive, record)
                self.assertEqual(Path(self.archive).read_bytes(), self.pristine)
                self.assertFalse(os.path.exists(self.archive + CORRUPTION_BACKUP_SUFFIX))

    def test_record_survives_serialization(self):
        record = apply_corruption(self.archive, CorruptionConfig(CorruptionType.COMMENT, seed=11, size=9))
        again = CorruptionRecord.from_dict(record.to_dict())
        self.assertEqual(again, record)
        restore_corruption(self.archive, again)
        self.assertEqual(Path(self.archive).read_bytes(), self.pristine)

    def test_deterministic_for_same_seed(self):
        for ctype in CorruptionType:
            with self.subTest(type=ctype):
                a = self.copy("a.zip")
                b = self.copy("b.zip")
                ra = apply_corruption(a, CorruptionConfig(ctype, seed=42))
                rb = apply_corruption(b, CorruptionConfig(ctype, seed=42))
                self.assertEqual(Path(a).read_bytes(), Path(b).read_bytes())
                self.assertEqual(ra.offsets, rb.offsets)
                self.assertEqual(ra.corrupted_bytes, rb.corrupted_bytes)
                ArchiveCorruptor(a, CorruptionConfig(ctype)).cleanup()
                ArchiveCorruptor(b, CorruptionConfig(ctype)).cleanup()

    def test_different_seeds_differ(self):
        a = self.copy("a.zip")
        b = self.copy("b.zip")
        apply_corruption(a, CorruptionConfig(CorruptionType.DATA, seed=1, size=8))
        apply_corruption(b, CorruptionConfig(CorruptionType.DATA, seed=2, size=8))
        self.assertNotEqual(Path(a).read_bytes(), Path(b).read_bytes())

    def test_truncate_size_and_severity(self):
        record = apply_corruption(self.archive, CorruptionConfig(CorruptionType.TRUNCATE, size=100))
        self.assertEqual(os.path.getsize(self.archive), len(self.pristine) - 100)
        self.assertEqual(record.size, 100)
        restore_corruption(self.archive, record)
        record = apply_corruption(self.archive, CorruptionConfig(CorruptionType.TRUNCATE, severity=0.5))
        self.assertEqual(os.path.getsize(self.archive), len(self.pristine) - len(self.pristine) // 2)
        restore_corruption(self.archive, record)
        self.assertEqual(Path(self.archive).read_bytes(), self.pristine)

    def test_data_at_explicit_offset(self):
        with zipfile.ZipFile(self.archive) as zf:
            info = zf.getinfo("docs/readme.txt")
        data_start = info.header_offset + 30 + len(info.filename.encode()) + len(info.extra)
        record = apply_corruption(self.archive, CorruptionConfig(CorruptionType.DATA, offset=data_start + 2, size=4))
        self.assertEqual(record.offsets, [data_start + 2])
        self.assertEqual(len(record.original_bytes), 4)
        self.assertTrue(all(o != c for o, c in zip(record.original_bytes, record.corrupted_bytes)))
        self.assertEqual(detect_corruption(self.archive), [CorruptionType.DATA])

    def test_data_offset_outside_payload_is_rejected(self):
        with self.assertRaises(CorruptionInjectionError):
            apply_corruption(self.archive, CorruptionConfig(CorruptionType.DATA, offset=0))
        self.assertEqual(Path(self.archive).read_bytes(), self.pristine)

    def test_context_manager_restores_after_error(self):
        with self.assertRaises(RuntimeError):
            with corrupted(self.archive, CorruptionConfig(CorruptionType.HEADER, seed=5)) as record:
                self.assertEqual(record.type, CorruptionType.HEADER)
                self.assertEqual(detect_corruption(self.archive), [CorruptionType.HEADER])
                raise RuntimeError("test body failed")
        self.assertEqual(Path(self.archive).read_bytes(), self.pristine)
        self.assertFalse(os.path.exists(self.archive + CORRUPTION_BACKUP_SUFFIX))

    def test_bookkeeping_failures(self):
        empty = self.root / "empty.zip"
        empty.write_bytes(b"")
        with self.assertRaises(CorruptionInjectionError):
            apply_corruption(str(empty), CorruptionConfig(CorruptionType.CRC))
        with self.assertRaises(CorruptionInjectionError):
            apply_corruption(self.archive, CorruptionConfig(CorruptionType.TRUNCATE, severity=0))
        with self.assertRaises(CorruptionInjectionError):
            apply_corruption(str(self.root / "missing.zip"), CorruptionConfig(CorruptionType.CRC))
        self.assertEqual(detect_corruption(str(empty)), [CorruptionType.TRUNCATE])

    def test_leftover_backup_copy_is_never_overwritten(self):
        leftover = Path(self.archive + CORRUPTION_BACKUP_SUFFIX)
        leftover.write_bytes(b"pristine copy from an interrupted run")
        with self.assertRaises(CorruptionInjectionError):
            apply_corruption(self.archive, CorruptionConfig(CorruptionType.CRC, seed=2))
        self.assertEqual(leftover.read_bytes(), b"pristine copy from an interrupted run")
        self.assertEqual(Path(self.archive).read_bytes(), self.pristine)

    def test_recoverable_damage_keeps_entries_readable(self):
        for ctype in (CorruptionType.CRC, CorruptionType.LOCAL_HEADER):
            with self.subTest(type=ctype):
                path = self.copy(f"r-{ctype.value}.zip")
                apply_corruption(path, CorruptionConfig(ctype, seed=9))
                with zipfile.ZipFile(path) as zf:
                    self.assertIsNone(zf.testzip())
                    self.assertEqual(zf.read("docs/readme.txt"), FILES["docs/readme.txt"])

    def test_verifier_rejects_fatal_damage(self):
        for ctype in FATAL_TYPES:
            with self.subTest(type=ctype):
                path = self.copy(f"v-{ctype.value}.zip")
                apply_corruption(path, CorruptionConfig(ctype, seed=1))
                status = verify_archive(path)
                self.assertFalse(status.is_verified)
                self.assertFalse(status.checksums_verified)
                self.assertTrue(status.errors)

    def test_checksums_catch_data_damage(self):
        self.assertTrue(verify_archive(self.archive, with_checksums=True).checksums_verified)
        apply_corruption(self.archive, CorruptionConfig(CorruptionType.DATA, seed=4, size=16))
        status = verify_archive(self.archive, with_checksums=True)
        self.assertFalse(status.is_verified)
        self.assertFalse(status.checksums_verified)


class PRNGTests(unittest.TestCase):
    def test_stream_is_reproducible(self):
        a = DeterministicPRNG(b"base", 5)
        b = DeterministicPRNG(b"base", 5)
        self.assertEqual(a.next_bytes(100), b.next_bytes(100))
        self.assertNotEqual(DeterministicPRNG(b"base", 6).next_bytes(32), DeterministicPRNG(b"base", 5).next_bytes(32))

    def test_mutate_changes_every_byte(self):
        original = bytes(range(256))
        mutated = DeterministicPRNG(b"m", 1).mutate(original)
        self.assertTrue(all(x != y for x, y in zip(original, mutated)))

    def test_next_uint_bounds(self):
        prng = DeterministicPRNG(b"u", 0)
        values = [prng.next_uint(7) for _ in range(200)]
        self.assertTrue(all(0 <= v < 7 for v in values))
        self.assertEqual(prng.next_uint(0), 0)


if __name__ == "__main__":
    unittest.main()
