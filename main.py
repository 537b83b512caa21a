# chronify/main.py
"""Headless sync runner: open a session for one user and keep the replica reconciled."""
import os, sys
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import argparse
import asyncio
import logging
from typing import List, Optional

from core.logs import ensure_logger
from core.settings import SYNC
from services.events import SYNC_STATUS_CHANGED, SyncStatusEvent
from services.session import SyncSession
from storage.config import forget_user, load_config, remember_login


def _print_result(event: SyncStatusEvent) -> None:
    if event.result is None:
        return
    result = event.result
    line = (
        f"[{result.trigger}] {event.kind}: ok={result.succeeded} failed={result.failed} "
        f"parked={result.parked} deferred={result.deferred}"
    )
    if result.error:
        line += f" error={result.error}"
    print(line, flush=True)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__ or "")
    parser.add_argument("--user", help="User id the replica is scoped to (default: last used)")
    parser.add_argument("--api", help="Base URL of the tasks API (default: saved or %s)" % SYNC.api_base_url)
    parser.add_argument("--token", default=os.environ.get("CHRONIFY_TOKEN"), help="Optional bearer token")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--once", action="store_true", help="Run a single sync pass and exit")
    mode.add_argument(
        "--interval",
        type=float,
        default=SYNC.interval_sec,
        help="Seconds between periodic passes (default: %(default)s)",
    )
    parser.add_argument("--logout", action="store_true", help="Clear the local replica on exit")
    parser.add_argument("--verbose", action="store_true", help="Echo engine logs to stderr")
    return parser


async def _run(args: argparse.Namespace, user_id: str, api_base_url: str) -> int:
    session = SyncSession.open(user_id, api_base_url=api_base_url, token=args.token, interval=args.interval)
    session.facade.subscribe(SYNC_STATUS_CHANGED, _print_result)
    try:
        if args.once:
            result = await session.facade.force_sync()
            return 0 if result.success else 1
        await session.start()
        await asyncio.Event().wait()
    finally:
        await session.close(clear=args.logout)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    cfg = load_config()
    user_id = args.user or cfg.last_user_id
    if not user_id:
        print("No user given: pass --user", file=sys.stderr)
        return 2
    api_base_url = args.api or cfg.api_base_url or SYNC.api_base_url
    remember_login(user_id, api_base_url)

    logger = ensure_logger("cli")
    if args.verbose:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
        logging.getLogger("chronify").addHandler(handler)
    logger.info("Starting for %s against %s", user_id, api_base_url)

    try:
        return asyncio.run(_run(args, user_id, api_base_url))
    except KeyboardInterrupt:
        print("Stopped.")
        return 130
    finally:
        if args.logout:
            forget_user()


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    sys.exit(main())
