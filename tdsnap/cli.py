#!/usr/bin/env python3
"""
cli.py
Command-line interface for tdsnap.
Parses arguments, loads config, sets up logging, and invokes the orchestrator.
"""
from __future__ import annotations
import argparse, logging, os, sys
from .config import DEFAULT_CONFIG_PATH, SYSTEM_CONFIG_PATH, find_config, load_config
from .errors import TdsnapError
from .orchestrator import BackupRequest, run_backup
from .syncer import mirror
from .types import Backend
from .util import Runner, canonical_path, sanitize_name


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="[%(levelname)s] %(message)s",
        stream=sys.stderr,
        force=True,
    )


def check_root_access() -> int:
    """Snapshots and mounts need root; explain instead of failing halfway."""
    if os.geteuid() != 0:
        print(f"\n🔒 tdsnap needs root privileges to:", file=sys.stderr)
        print(f"   • Mount filesystems and snapshots read-only", file=sys.stderr)
        print(f"   • Create btrfs/LVM snapshots and loop devices", file=sys.stderr)
        print(f"   • Write its state to the metadata directory", file=sys.stderr)
        print(f"\n✨ Try this instead: sudo {' '.join(sys.argv)}\n", file=sys.stderr)
        return 1
    return 0


def _load(config_arg: str | None):
    try:
        cfg_path = find_config(config_arg)
    except FileNotFoundError as e:
        print(f"❌ Error: {e}", file=sys.stderr)
        print(f"💡 Hint: Check the path or drop --config to use {DEFAULT_CONFIG_PATH} / {SYSTEM_CONFIG_PATH}", file=sys.stderr)
        return None
    try:
        return load_config(cfg_path)
    except (OSError, ValueError) as e:
        print(f"❌ Error: Invalid configuration file {cfg_path}: {e}", file=sys.stderr)
        return None


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="tdsnap",
        description="tdsnap: snapshot a directory and take a level-N incremental backup of it",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "\n-t dump is only honoured for whole ext2/3/4 filesystems when dump(8) is installed;"
            "\notherwise tar(1) is used. The backend is fixed for the rest of a cycle."
        ),
    )
    ap.add_argument("-p", dest="path", metavar="PATH", help="/path/to/data to backup (required)")
    ap.add_argument("-n", dest="name", metavar="NAME", help="mnemonic backup name (default: derived from PATH)")
    ap.add_argument("-t", dest="backend", choices=["tar", "dump"], help="preferred incremental backend")
    ap.add_argument(
        "--config",
        default=None,
        help=f"path to tdsnap.toml (default: {DEFAULT_CONFIG_PATH} then {SYSTEM_CONFIG_PATH})",
    )
    ap.add_argument("--plan", action="store_true", help="show topology, snapshot type and next level; change nothing")
    return ap


def main(argv=None) -> int:
    try:
        ap = build_parser()
        args = ap.parse_args(argv)

        if not args.path:
            print("❌ Error: No path is provided... aborting", file=sys.stderr)
            ap.print_usage(sys.stderr)
            return 1
        path = canonical_path(args.path)
        if not os.path.isdir(path):
            print(f"❌ Error: Can not access directory \"{path}\".", file=sys.stderr)
            print("💡 Hint: Does it exist and have proper permissions?", file=sys.stderr)
            return 1

        cfg = _load(args.config)
        if cfg is None:
            return 1
        setup_logging(cfg.log_level)

        if not args.plan and check_root_access():
            return 1

        req = BackupRequest(
            path=path,
            name=args.name or sanitize_name(path),
            preference=Backend.from_name(args.backend) if args.backend else None,
            plan_only=args.plan,
        )
        return run_backup(cfg, req)

    except KeyboardInterrupt:
        print(f"\n\n⚡ Interrupted by user. Run again to clean up any leftover snapshot.", file=sys.stderr)
        return 130
    except TdsnapError as e:
        print(f"❌ Error: {e}", file=sys.stderr)
        return 1
    except Exception as e:
        print(f"❌ Unexpected error: {e}", file=sys.stderr)
        print(f"💡 Hint: Run with --plan first to check the target and configuration", file=sys.stderr)
        return 1


def mirror_main(argv=None) -> int:
    try:
        ap = argparse.ArgumentParser(
            prog="tdsnap-mirror",
            description="tdsnap-mirror: rsync the backup storage root onto its mirror device",
        )
        ap.add_argument("--config", default=None, help="path to tdsnap.toml")
        args = ap.parse_args(argv)

        cfg = _load(args.config)
        if cfg is None:
            return 1
        setup_logging(cfg.log_level)
        if check_root_access():
            return 1
        mirror(cfg, Runner())
        return 0
    except KeyboardInterrupt:
        print(f"\n\n⚡ Interrupted by user.", file=sys.stderr)
        return 130
    except TdsnapError as e:
        print(f"❌ Error: {e}", file=sys.stderr)
        return 1
    except Exception as e:
        print(f"❌ Unexpected error: {e}", file=sys.stderr)
        print(f"💡 Hint: Check that the mirror device is attached and the storage root is readable", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
