"""
Offline Sync Engine - Command Line Interface

Operator tool for inspecting and driving a local engine against a remote API.

Usage:
    python -m offline_sync --status
    python -m offline_sync --sync --api http://localhost:8000
    python -m offline_sync --resolve notes n1 server-wins
"""

import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import Optional, Sequence

from .config import SyncSettings
from .engine import engine_session
from .models import ResolutionStrategy


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Offline Sync Engine")
    parser.add_argument("--status", action="store_true", help="Show sync state and queue status")
    parser.add_argument("--sync", action="store_true", help="Run a full synchronization pass")
    parser.add_argument("--drain", action="store_true", help="Drain the task queue only")
    parser.add_argument("--conflicts", action="store_true", help="List pending conflicts")
    parser.add_argument(
        "--resolve",
        nargs=3,
        metavar=("TYPE", "ID", "STRATEGY"),
        help=f"Resolve a conflict ({', '.join(s.value for s in ResolutionStrategy if s != ResolutionStrategy.MANUAL)})",
    )
    parser.add_argument("--purge-cache", action="store_true", help="Purge expired cache entries")
    parser.add_argument("--clear", action="store_true", help="Clear offline data and conflicts")
    parser.add_argument("--db", type=Path, help="Path to the local SQLite database")
    parser.add_argument("--api", help="Base URL of the remote API")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    return parser


def settings_from_args(args: argparse.Namespace) -> SyncSettings:
    overrides = {}
    if args.db:
        overrides["storage_path"] = args.db
    if args.api:
        overrides["api_base_url"] = args.api
    return SyncSettings(**overrides)


async def main(argv: Optional[Sequence[str]] = None) -> int:
    """CLI entry point. Returns the process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    # Configure logging
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    exit_code = 0
    async with engine_session(settings_from_args(args)) as engine:
        await engine.connectivity.check()

        if args.status:
            state = engine.get_state()
            print("\n=== Sync Status ===")
            print(f"Online: {state.is_online}")
            print(f"Reachable: {state.is_reachable}")
            print(f"Pending tasks: {state.pending_task_count}")
            print(f"Offline records: {len(engine.store)}")
            print(f"Open conflicts: {len(engine.conflicts)}")
            print(f"Last online: {state.last_online}")
            print(f"Cache: {json.dumps(engine.cache.stats(), indent=2)}")

        if args.purge_cache:
            removed = engine.cache.purge_expired()
            print(f"\nPurged {removed} expired cache entries")

        if args.drain:
            result = await engine.queue.drain()
            print(
                f"\nDrain result: {result.processed} processed, {result.failed} failed, "
                f"{result.deferred} deferred"
            )

        if args.sync:
            result = await engine.force_sync()
            print(
                f"\nSync result: {result.synced} synced, {result.conflicts} conflicts, "
                f"{result.errors} errors"
            )
            if not engine.connectivity.is_reachable:
                print("API not reachable; nothing was synced")
                exit_code = 1

        if args.conflicts:
            pending = engine.pending_conflicts()
            print(f"\n=== Conflicts ({len(pending)}) ===")
            for conflict in pending:
                print(f"  - {conflict.resource_type} {conflict.id} (detected {conflict.detected_at})")

        if args.resolve:
            resource_type, record_id, strategy = args.resolve
            try:
                resolved = await engine.resolve_conflict(record_id, resource_type, strategy)
            except ValueError as e:
                print(f"\nCannot resolve: {e}")
                resolved = False
            print(f"\nResolve {resource_type} {record_id}: {'ok' if resolved else 'failed'}")
            if not resolved:
                exit_code = 1

        if args.clear:
            engine.clear_offline_data()
            engine.queue.clear()
            print("\nOffline data, conflicts and queue cleared")

    return exit_code


def run() -> None:
    raise SystemExit(asyncio.run(main()))


if __name__ == "__main__":
    run()
