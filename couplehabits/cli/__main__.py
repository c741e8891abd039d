"""
couplehabits CLI - inspect and drive sync from the command line.

Usage:
    couplehabits status
    couplehabits push
    couplehabits pull --user ID [--couple ID]
    couplehabits listen --user ID [--couple ID]
"""

import argparse
import asyncio
import json
import logging
import sys

from couplehabits.config import Settings, get_settings
from couplehabits.core.validation import validate_id
from couplehabits.protocols import CoupleHabitsError
from couplehabits.storage import Outbox, SQLiteStore, SyncEngine

logger = logging.getLogger(__name__)


def _open_store(settings: Settings) -> SQLiteStore:
    return SQLiteStore(db_path=settings.db_path)


async def _open_engine(settings: Settings, store: SQLiteStore) -> SyncEngine:
    from couplehabits.storage.remote import SupabaseRemoteStore

    remote = await SupabaseRemoteStore.connect(settings)
    return SyncEngine(store, remote)


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def cmd_status(args, settings: Settings):
    """Show the outbox summary."""
    store = _open_store(settings)
    status = Outbox(store).status()
    status["db_path"] = str(store.db_path)
    status["remote_configured"] = settings.has_remote
    _print_json(status)


async def cmd_push(args, settings: Settings):
    """Deliver queued actions once, then pull."""
    engine = await _open_engine(settings, _open_store(settings))
    try:
        result = await engine.drain()
    finally:
        await engine.close()
    _print_json(result.to_dict() if result else {"skipped": True})


async def cmd_pull(args, settings: Settings):
    """Pull everything visible to a user into the local store."""
    engine = await _open_engine(settings, _open_store(settings))
    try:
        result = await engine.set_context(args.user, args.couple)
    finally:
        await engine.close()
    _print_json(result.to_dict())


async def cmd_listen(args, settings: Settings):
    """Stay subscribed to remote changes until interrupted."""
    engine = await _open_engine(settings, _open_store(settings))
    engine.add_listener(lambda: print("data changed", flush=True))
    try:
        result = await engine.set_context(args.user, args.couple)
        print(f"Listening as {args.user} (pulled {result.pulled} rows). Ctrl-C to stop.")
        await asyncio.Event().wait()
    finally:
        await engine.close()


def _add_context_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--user", required=True, help="Current user id")
    parser.add_argument("--couple", default=None, help="Couple id (discovered when omitted)")


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="couplehabits",
        description="Offline-first goal tracking for couples",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("status", help="Show outbox status")
    subparsers.add_parser("push", help="Drain the outbox to the remote store")

    p_pull = subparsers.add_parser("pull", help="Pull remote data for a user")
    _add_context_args(p_pull)

    p_listen = subparsers.add_parser("listen", help="Apply remote changes as they arrive")
    _add_context_args(p_listen)

    args = parser.parse_args(argv)

    settings = get_settings()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.command in ("pull", "listen"):
            validate_id(args.user, "user")
            if args.couple:
                validate_id(args.couple, "couple")

        if args.command == "status":
            cmd_status(args, settings)
        elif args.command == "push":
            asyncio.run(cmd_push(args, settings))
        elif args.command == "pull":
            asyncio.run(cmd_pull(args, settings))
        elif args.command == "listen":
            asyncio.run(cmd_listen(args, settings))
    except KeyboardInterrupt:
        pass
    except (ValueError, CoupleHabitsError) as e:
        logger.error(f"{e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Command failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
