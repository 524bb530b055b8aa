"""
dirsnap: snapshots of directories and files, with integrity checking.

Features:

- Full and incremental ZIP archives of a directory tree, each carrying an
  embedded checksum manifest.
- Timestamped single-file backups.
- Identical-content detection: an unchanged directory or file produces no
  new snapshot.
- Atomic creation (temp file plus rename) with tracked cleanup and
  cooperative cancellation.
- Structural and checksum verification, with results kept in sidecar
  metadata.
- Deterministic corruption injection and detection for exercising the
  verifier.
"""

__version__ = "0.1"

__all__ = [
    "archive",
    "backup",
    "compare",
    "config",
    "corruption",
    "snapshot",
    "verify",
]
