from __future__ import annotations

import argparse
import json
import sys
from typing import Optional

from dirsnap.corruption import (
    CorruptionConfig,
    CorruptionRecord,
    CorruptionType,
    apply_corruption,
    classify_corruption,
    restore_corruption,
)
from dirsnap.errors import DirsnapError


def cmd_apply(args: argparse.Namespace) -> None:
    config = CorruptionConfig(
        type=CorruptionType(args.type),
        seed=args.seed,
        size=args.size,
        offset=args.offset,
        severity=args.severity,
    )
    record = apply_corruption(args.archive, config)
    print(record.description)
    if args.record:
        with open(args.record, "w", encoding="utf-8") as fh:
            json.dump(record.to_dict(), fh, indent=2)
        print(f"Wrote restore record to {args.record}")


def cmd_restore(args: argparse.Namespace) -> None:
    with open(args.record, "r", encoding="utf-8") as fh:
        record = CorruptionRecord.from_dict(json.load(fh))
    restore_corruption(args.archive, record)
    print(f"Restored {args.archive}")


def cmd_detect(args: argparse.Namespace) -> bool:
    report = classify_corruption(args.archive)
    if report.clean:
        print("No corruption detected")
        return True
    kind = "fatal" if report.fatal else "recoverable"
    print(f"Detected ({kind}): " + ", ".join(t.value for t in report.types))
    return False


def main(argv: Optional[list[str]] = None) -> None:
    ap = argparse.ArgumentParser(prog="dirsnap-corrupt", description="Corrupt dirsnap archives for testing")
    sub = ap.add_subparsers(dest="cmd", required=True)

    p_apply = sub.add_parser("apply", help="Apply one deterministic corruption")
    p_apply.add_argument("archive", help="Path to .zip archive")
    p_apply.add_argument("--type", required=True, choices=[t.value for t in CorruptionType], help="Corruption type")
    p_apply.add_argument("--seed", type=int, default=0, help="PRNG seed for reproducibility (default 0)")
    p_apply.add_argument("--size", type=int, default=0, help="Bytes to affect (0 derives from --severity)")
    p_apply.add_argument("--offset", type=int, default=None, help="Absolute offset for data corruption")
    p_apply.add_argument("--severity", type=float, default=0.1, help="Fraction to affect when --size is 0 (default 0.1)")
    p_apply.add_argument("--record", help="Write the restore record to this JSON file")
    p_apply.set_defaults(func=cmd_apply)

    p_restore = sub.add_parser("restore", help="Undo a corruption using its record")
    p_restore.add_argument("archive", help="Path to .zip archive")
    p_restore.add_argument("--record", required=True, help="JSON record written by 'apply'")
    p_restore.set_defaults(func=cmd_restore)

    p_detect = sub.add_parser("detect", help="Report corruption types present")
    p_detect.add_argument("archive", help="Path to .zip archive")
    p_detect.set_defaults(func=cmd_detect)

    args = ap.parse_args(argv)
    try:
        result = args.func(args)
    except (DirsnapError, OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    if result is False:
        sys.exit(1)


if __name__ == "__main__":
    main()
