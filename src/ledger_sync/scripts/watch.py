"""Run a sync session against a backend and log what it observes."""
from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
import sys

from ledger_sync.core.settings import POLL_DOMAINS, Settings, SyncConfig, load_sync_config
from ledger_sync.models.events import (
    AggregateChanged,
    HealthChanged,
    ItemFailed,
    ObserverEvent,
    RemoteStatsChanged,
)
from ledger_sync.services.observers import DOMAIN_HEALTH
from ledger_sync.services.session import SyncSession

logger = logging.getLogger("ledger_sync.watch")


def log_event(event: ObserverEvent) -> None:
    """Log the observer events a person watching the engine cares about."""
    if isinstance(event, HealthChanged):
        logger.info("health: %s", event.current.to_dict())
    elif isinstance(event, AggregateChanged):
        snapshot = event.snapshot
        logger.info(
            "%s totals: count=%d pending=%s confirmed=%s",
            event.domain,
            snapshot.count,
            snapshot.pending_sum,
            snapshot.confirmed_sum,
        )
    elif isinstance(event, RemoteStatsChanged):
        logger.info("%s stats: %s", event.domain, dict(event.stats.values))
    elif isinstance(event, ItemFailed):
        logger.warning("%s %s failed: %s", event.item.kind.value, event.item.id, event.item.reason)


async def watch(config: SyncConfig, duration: float | None) -> None:
    async with SyncSession(config) as session:
        session.add_listener(DOMAIN_HEALTH, log_event)
        for domain in POLL_DOMAINS:
            session.add_listener(domain, log_event)
        if duration:
            await asyncio.sleep(duration)
        else:
            await asyncio.Event().wait()


def main() -> None:
    parser = argparse.ArgumentParser(description="Watch a ledger sync session")
    parser.add_argument(
        "--base-url",
        default=None,
        help="Backend base URL (defaults to LEDGER_SYNC_BASE_URL)",
    )
    parser.add_argument(
        "--no-push",
        action="store_true",
        help="Disable the push channel and rely on polling alone.",
    )
    parser.add_argument(
        "--duration",
        type=float,
        default=None,
        help="Stop after this many seconds instead of running until interrupted.",
    )
    args = parser.parse_args()

    settings = Settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = load_sync_config(settings)
        overrides: dict[str, object] = {}
        if args.base_url:
            overrides["base_url"] = args.base_url
        if args.no_push:
            overrides["push_enabled"] = False
        config = dataclasses.replace(config, **overrides)
    except ValueError as exc:
        print(f"[ledger-sync] invalid configuration: {exc}", file=sys.stderr)
        sys.exit(2)

    if not config.base_url:
        print("[ledger-sync] no backend configured; pass --base-url", file=sys.stderr)
        sys.exit(2)

    try:
        asyncio.run(watch(config, args.duration))
    except KeyboardInterrupt:
        logger.info("Interrupted; session stopped")


if __name__ == "__main__":
    main()
