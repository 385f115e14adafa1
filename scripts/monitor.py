"""
Staff Terminal Monitor

Keeps an establishment's board in sync with the API (heartbeat + snapshot
every POLLING_INTERVAL_SECONDS) and prints the semaphore of every busy table.
Run from project root: python scripts/monitor.py <establishment_id>
"""

import argparse
import asyncio
import os
import sys
from datetime import datetime

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from tablecall.client import TableCallClient
from tablecall.core.config import get_settings, setup_logging
from tablecall.domain import CallType, EstablishmentSnapshot, SemaphoreStatus
from tablecall.engine import SessionSubject, SyncLoop, describe_establishment
from tablecall.engine.status import establishment_is_open

STATUS_ICONS = {
    SemaphoreStatus.IDLE: "⚪",
    SemaphoreStatus.GREEN: "🟢",
    SemaphoreStatus.YELLOW: "🟡",
    SemaphoreStatus.RED: "🔴",
}


def header(snapshot: EstablishmentSnapshot, now: float) -> str:
    """Name and open state; a stale heartbeat counts as closed."""
    is_open = establishment_is_open(snapshot, now, get_settings().heartbeat_threshold_seconds)
    return f"🏠 {snapshot.name} ({'open' if is_open else 'closed'})"


def render(loop: SyncLoop, establishment_id: str) -> None:
    snapshot = loop.cache.get(establishment_id)
    print("\n" + "=" * 60)
    print(f"⏰ {datetime.now().strftime('%H:%M:%S')}", end="")
    if loop.is_updating:
        print("  🔄 updating...", end="")
    if loop.sync_issue:
        print(f"  ⚠️ sync issue: {loop.last_error}", end="")
    print()

    if snapshot is None:
        print("   (no data yet)")
        return

    now = loop.clock.now()
    print(header(snapshot, now))
    busy = [b for b in describe_establishment(snapshot, now) if not b.is_idle]
    if not busy:
        print("   All tables idle")
    for board in busy:
        counts = "  ".join(
            f"{t.value}×{board.active_counts[t]}{STATUS_ICONS[board.type_statuses[t]]}"
            for t in CallType if board.active_counts[t]
        )
        print(f"   {STATUS_ICONS[board.status]} Table {board.number:>3}  {counts}")


async def monitor(establishment_id: str, refresh_seconds: float) -> None:
    async with TableCallClient() as client:
        loop = SyncLoop(client)
        loop.start(SessionSubject.owner(establishment_id))
        try:
            while True:
                await asyncio.sleep(refresh_seconds)
                render(loop, establishment_id)
        finally:
            loop.stop(clear_cache=True)
            await client.set_heartbeat(establishment_id, False)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Staff terminal board")
    parser.add_argument("establishment_id", help="Establishment to watch")
    parser.add_argument(
        "--refresh",
        type=float,
        default=5.0,
        help="Seconds between board redraws (default: 5)"
    )
    args = parser.parse_args()

    setup_logging()
    print(f"🎯 Target: {get_settings().api_base_url}")
    try:
        asyncio.run(monitor(args.establishment_id, args.refresh))
    except KeyboardInterrupt:
        print("\n👋 Monitor stopped, establishment closed")
