"""Command line helper for the InvoiceApp Google Drive backup."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

import db
import settings
from core import app_paths, snapshot
from core.drive_sync import BackupSync, SyncResult
from core.errors import SyncError
from core.logging_config import configure_logging


def _print_result(result: SyncResult) -> None:
    print(result.message)
    for name, stats in result.stats.items():
        print(f"  {name:<12} added={stats.get('added', 0)} updated={stats.get('updated', 0)}")


async def command_status(engine: BackupSync, args: argparse.Namespace) -> int:
    status = await engine.status()
    print(f"Environment   : {status.environment} ({status.folder_name})")
    if status.is_configured:
        print(f"OAuth client  : {status.client_id} [{status.config_source}]")
    else:
        print("OAuth client  : not configured")
    print(f"Signed in     : {'yes' if status.is_authorized else 'no'}")
    print(f"Auto-backup   : {'enabled' if status.is_enabled else 'disabled'}")
    print(f"Last backup   : {status.last_backup_time or 'never'}")
    print(f"Local data    : {'empty' if status.local_empty else 'present'}")
    if status.local_empty and status.is_authorized:
        print("Run 'restore' to load your data from Google Drive.")
    return 0


async def command_connect(engine: BackupSync, args: argparse.Namespace) -> int:
    if args.client_id:
        await engine.store.set_setting(settings.MANUAL_CLIENT_ID_KEY, args.client_id)
    status = await engine.connect()
    print(f"Connected to Google Drive folder {status.folder_name}.")
    return 0


async def command_disconnect(engine: BackupSync, args: argparse.Namespace) -> int:
    await engine.disconnect()
    print("Signed out from Google Drive.")
    return 0


async def command_push(engine: BackupSync, args: argparse.Namespace) -> int:
    result = await engine.push_snapshot()
    print(f"Backup saved: {result.name}")
    if result.pruned:
        print(f"Removed {result.pruned} old backup(s).")
    return 0


async def command_list(engine: BackupSync, args: argparse.Namespace) -> int:
    backups = await engine.list_backups()
    if not backups:
        print("No backup files found in Google Drive.")
        return 0
    for backup in backups:
        size = f"{backup.size} bytes" if backup.size is not None else "-"
        print(f"{backup.id}  {backup.name}  {size}")
    return 0


async def command_merge(engine: BackupSync, args: argparse.Namespace) -> int:
    _print_result(await engine.merge_latest())
    return 0


async def command_restore(engine: BackupSync, args: argparse.Namespace) -> int:
    if args.file_id:
        result = await engine.restore_backup(args.file_id)
    else:
        result = await engine.restore_latest()
    _print_result(result)
    return 0


async def command_export(engine: BackupSync, args: argparse.Namespace) -> int:
    content = await engine.export_data()
    if args.path:
        path = Path(args.path)
        path.parent.mkdir(parents=True, exist_ok=True)
    else:
        path = app_paths.ensure_directory(app_paths.EXPORT_DIR) / snapshot.snapshot_name()
    path.write_text(content, encoding="utf-8")
    print(f"Exported data to: {path}")
    return 0


async def command_import(engine: BackupSync, args: argparse.Namespace) -> int:
    try:
        content = Path(args.path).read_text(encoding="utf-8")
    except OSError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    stats = await engine.import_data(content, clear_existing=not args.merge)
    for name, item in stats.items():
        print(f"  {name:<12} added={item['added']} updated={item['updated']}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="InvoiceApp Google Drive backup tool")
    parser.add_argument("--db", help="Path to the local database file")
    parser.add_argument("--verbose", action="store_true", help="Log debug messages to stderr as well")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("status", help="Show backup configuration and sign-in state").set_defaults(
        func=command_status
    )

    connect_parser = subparsers.add_parser("connect", help="Sign in to Google Drive")
    connect_parser.add_argument("--client-id", help="Store this OAuth client id before signing in")
    connect_parser.set_defaults(func=command_connect)

    subparsers.add_parser("disconnect", help="Sign out and forget the stored token").set_defaults(
        func=command_disconnect
    )
    subparsers.add_parser("push", help="Upload a backup now").set_defaults(func=command_push)
    subparsers.add_parser("list", help="List backups in Google Drive").set_defaults(func=command_list)
    subparsers.add_parser("merge", help="Merge the latest backup into local data").set_defaults(
        func=command_merge
    )

    restore_parser = subparsers.add_parser("restore", help="Replace local data with a backup")
    restore_parser.add_argument("--file-id", help="Restore this backup instead of the latest one")
    restore_parser.set_defaults(func=command_restore)

    export_parser = subparsers.add_parser("export", help="Write local data to a JSON file")
    export_parser.add_argument(
        "path",
        nargs="?",
        help="Destination file (defaults to a timestamped file in the exports folder)",
    )
    export_parser.set_defaults(func=command_export)

    import_parser = subparsers.add_parser("import", help="Load local data from a JSON file")
    import_parser.add_argument("path")
    import_parser.add_argument(
        "--merge",
        action="store_true",
        help="Merge with existing data instead of replacing it",
    )
    import_parser.set_defaults(func=command_import)

    return parser


async def _run(args: argparse.Namespace) -> int:
    engine = BackupSync(db.RecordStore(args.db), settings.load_sync_config())
    try:
        await engine.initialize()
        return await args.func(engine, args)
    except (SyncError, db.StoreError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        await engine.close()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.INFO, console=args.verbose)
    return asyncio.run(_run(args))


if __name__ == "__main__":
    sys.exit(main())
