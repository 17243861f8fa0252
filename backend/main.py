"""
Command-line sync client.

    python backend/main.py export out.json [--no-public] [--no-stats] ...
    python backend/main.py import backup.json
    python backend/main.py status
    python backend/main.py push --user <id>
    python backend/main.py pull --user <id>
    python backend/main.py watch --user <id> [--interval 60]

Every command prints a ``{success, message, data}`` JSON envelope.
"""
import argparse
import json
import logging
import sys
import time

import config
import database
import user_data
from errors import AppError, envelope, internal_error_envelope
from sync import AutoSync, LocalStore, SyncManager, SyncState

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Export, import and synchronize exam question banks.")
    parser.add_argument("--store", default=config.SYNC_STORE_PATH, help="Local store JSON file")
    parser.add_argument("--state", default=config.SYNC_STATE_PATH, help="Sync state JSON file")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    commands = parser.add_subparsers(dest="command", required=True)

    export = commands.add_parser("export", help="Write a sync document")
    export.add_argument("path", help="Output .json file")
    export.add_argument("--no-public", action="store_true", help="Leave out public questions")
    export.add_argument("--no-personal", action="store_true", help="Leave out personal questions")
    export.add_argument("--no-mistakes", action="store_true", help="Leave out the mistake bank")
    export.add_argument("--no-stats", action="store_true", help="Leave out study statistics")

    importer = commands.add_parser("import", help="Merge a sync document into the local store")
    importer.add_argument("path", help="Sync document .json file")

    commands.add_parser("status", help="Show device id, bank sizes and recent syncs")

    for name, text in (("push", "Merge the local store into the server"),
                       ("pull", "Merge the server data into the local store"),
                       ("watch", "Pull then push on a fixed interval")):
        sub = commands.add_parser(name, help=text)
        sub.add_argument("--user", required=True, help="User id on the server")
        if name == "watch":
            sub.add_argument("--interval", type=float, default=config.SYNC_INTERVAL_SECONDS, help="Seconds between syncs")
    return parser


def push(manager: SyncManager, user_id: str) -> dict:
    document = manager.export_document(include_public=False)
    result = user_data.import_sync_document(user_id, document)
    manager.state.record("push", result["success"], "; ".join(result["errors"]) or None, result["imported"])
    return result


def pull(manager: SyncManager, user_id: str) -> dict:
    document = user_data.export_sync_document(user_id)
    return manager.import_document(document).to_dict()


def run(args, manager: SyncManager):
    if args.command == "export":
        document = manager.export_to_file(
            args.path,
            include_public=not args.no_public,
            include_personal=not args.no_personal,
            include_mistakes=not args.no_mistakes,
            include_stats=not args.no_stats,
        )
        return {"path": args.path, "dataTypes": document["dataTypes"], "stats": document["stats"]}, "Export complete"
    if args.command == "import":
        return manager.import_from_file(args.path).to_dict(), "Import complete"
    if args.command == "status":
        return manager.status(), "ok"

    database.connect_with_retry()
    database.ensure_indexes()
    if args.command == "push":
        return push(manager, args.user), "Push complete"
    if args.command == "pull":
        return pull(manager, args.user), "Pull complete"

    auto = AutoSync(lambda: (pull(manager, args.user), push(manager, args.user)), args.interval)
    auto.trigger()
    auto.start()
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        auto.stop()
    return manager.status(), "Stopped"


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    config.configure_logging(args.log_level)
    try:
        manager = SyncManager(LocalStore.load(args.store), SyncState(args.state), args.store)
        data, message = run(args, manager)
        output, code = envelope(data, message), 0
    except AppError as e:
        logger.warning("%s failed: %s", args.command, e.message)
        output, code = e.to_envelope(), 1
    except Exception as e:
        output, code = internal_error_envelope(e), 1
    print(json.dumps(output, ensure_ascii=False, indent=2, default=str))
    return code


if __name__ == "__main__":
    sys.exit(main())
