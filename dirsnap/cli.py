from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import List, Optional

from dirsnap.archive import create_archive, resolve_archive_dir
from dirsnap.backup import create_backup, resolve_backup_dir
from dirsnap.config import Config, load_config
from dirsnap.errors import ConfigError, DirsnapError
from dirsnap.naming import NamingInfo
from dirsnap.snapshot import Outcome, Status, list_archives, list_backups, verify_snapshot


def _print_outcome(outcome: Outcome, what: str, quiet: bool = False) -> None:
    if outcome.status is Status.CREATED:
        print(f"Created {what}: {outcome.path}")
        if outcome.verification is not None:
            print(f"Verified {what}: {outcome.path}")
    elif outcome.status is Status.IDENTICAL:
        if what == "archive":
            print(f"Directory is identical to existing archive: {outcome.path}")
        else:
            print(f"File is identical to existing backup: {outcome.path}")
    elif outcome.status is Status.NO_CHANGES:
        print(f"No files modified since last full archive: {outcome.path}")
    elif outcome.status is Status.DRY_RUN:
        if not quiet:
            print("[Dry Run] Files to include:")
            for f in outcome.files:
                print("  ", f)
        print(f"Would create {what}: {outcome.path}")


def cmd_archive(args: argparse.Namespace, config: Config, incremental: bool) -> Outcome:
    naming = NamingInfo(prefix=args.prefix or "", branch=args.branch or "", commit=args.commit or "")
    outcome = create_archive(
        args.directory,
        note=args.note or "",
        incremental=incremental,
        verify=args.verify,
        config=config,
        naming=naming,
        dry_run=args.dry_run,
    )
    _print_outcome(outcome, "archive", quiet=args.quiet)
    return outcome


def cmd_backup(args: argparse.Namespace, config: Config) -> Outcome:
    outcome = create_backup(args.file, note=args.note or "", config=config, dry_run=args.dry_run)
    _print_outcome(outcome, "backup")
    return outcome


def cmd_list(args: argparse.Namespace, config: Config) -> None:
    archive_dir = resolve_archive_dir(os.path.abspath(args.directory), config)
    archives = list_archives(archive_dir)
    if not archives:
        print(f"No archives found in {archive_dir}")
        return
    for snap in archives:
        line = f"{snap.path} (created: {snap.created_at:%Y-%m-%d %H:%M:%S})"
        if snap.verification is not None:
            line += " [VERIFIED]" if snap.verification.is_verified else " [FAILED]"
        print(line)


def cmd_list_backups(args: argparse.Namespace, config: Config) -> None:
    source = os.path.abspath(args.file)
    backup_dir = resolve_backup_dir(source, config)
    backups = list_backups(backup_dir, source)
    if not backups:
        print(f"No backups found for {os.path.basename(source)} in {backup_dir}")
        return
    for snap in backups:
        print(f"{snap.path} (created: {snap.created_at:%Y-%m-%d %H:%M:%S})")


def cmd_verify(args: argparse.Namespace, config: Config) -> bool:
    archive_dir = resolve_archive_dir(os.path.abspath(args.directory), config)
    archives = list_archives(archive_dir)
    if args.archive:
        archives = [a for a in archives if a.name == args.archive or a.path == os.path.abspath(args.archive)]
        if not archives:
            raise ConfigError(f"archive not found: {args.archive}", operation="verify", path=archive_dir)
    ok = True
    for snap in archives:
        status = verify_snapshot(snap, args.checksums, algorithm=config.checksum_algorithm)
        if status.is_verified:
            print(f"Archive verified: {snap.name}")
        else:
            ok = False
            print(f"Archive verification failed: {snap.name}")
            for err in status.errors:
                print(f"  {err}")
    return ok


def main(argv: Optional[List[str]] = None) -> None:
    ap = argparse.ArgumentParser(prog="dirsnap", description="Directory archiving and file backup")
    ap.add_argument("--config", help="YAML configuration file")
    ap.add_argument("--verbose", "-v", action="count", default=0, help="Log progress (-vv for debug)")
    sub = ap.add_subparsers(dest="cmd", required=True)

    for name, help_text in (("full", "Create a full archive"), ("inc", "Create an incremental archive")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("directory", nargs="?", default=".", help="Directory to archive (default: current)")
        p.add_argument("--note", help="Note appended to the archive name")
        p.add_argument("--dry-run", action="store_true", help="Show what would be archived")
        p.add_argument("--verify", action="store_true", help="Verify the archive after creating it")
        p.add_argument("--prefix", help="Archive name prefix")
        p.add_argument("--branch", help="Branch name to embed in the archive name")
        p.add_argument("--commit", help="Commit hash to embed in the archive name")
        p.add_argument("--quiet", action="store_true", help="Do not list files on dry run")

    p_backup = sub.add_parser("backup", help="Back up a single file")
    p_backup.add_argument("file", help="File to back up")
    p_backup.add_argument("--note", help="Note appended to the backup name")
    p_backup.add_argument("--dry-run", action="store_true", help="Show the backup that would be created")

    p_list = sub.add_parser("list", help="List archives of a directory")
    p_list.add_argument("directory", nargs="?", default=".", help="Archived directory (default: current)")

    p_lb = sub.add_parser("list-backups", help="List backups of a file")
    p_lb.add_argument("file", help="Backed up file")

    p_verify = sub.add_parser("verify", help="Verify archives")
    p_verify.add_argument("archive", nargs="?", help="Archive name or path (default: all)")
    p_verify.add_argument("--directory", default=".", help="Archived directory (default: current)")
    p_verify.add_argument("--checksums", action="store_true", help="Also verify stored checksums")

    args = ap.parse_args(argv)
    level = logging.WARNING
    if args.verbose == 1:
        level = logging.INFO
    elif args.verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

    config = Config()
    file_mode = args.cmd in ("backup", "list-backups")
    try:
        if args.config:
            config = load_config(args.config)
        if args.cmd in ("full", "inc"):
            outcome = cmd_archive(args, config, incremental=args.cmd == "inc")
            sys.exit(config.exit_code_for(outcome))
        elif args.cmd == "backup":
            outcome = cmd_backup(args, config)
            sys.exit(config.exit_code_for(outcome, file_mode=True))
        elif args.cmd == "list":
            cmd_list(args, config)
        elif args.cmd == "list-backups":
            cmd_list_backups(args, config)
        elif args.cmd == "verify":
            if not cmd_verify(args, config):
                sys.exit(config.status_verification_failed)
        else:
            raise RuntimeError("Unknown command")
    except DirsnapError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(config.exit_code_for(e, file_mode=file_mode))
    except KeyboardInterrupt:
        print("Error: interrupted", file=sys.stderr)
        sys.exit(config.status_cancelled)


if __name__ == "__main__":
    main()
