"""
Chaos Simulation Script

Fires concurrent customer calls and staff actions at one establishment to
check that every call is resolved exactly once.
Run from project root: python scripts/simulate.py
"""

import asyncio
import os
import random
import sys
import time
import argparse
from collections import Counter
from datetime import datetime
from typing import Any

import httpx
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Configuration
API_BASE_URL = "http://localhost:8001"
TOTAL_CALLS = 50
TOTAL_TABLES = 12

CALL_TYPES = ["WAITER", "MENU", "BILL"]
STAFF_ACTIONS = ["attend", "attend", "attend", "cancel", "view", "close"]
RESTAURANT_NAMES = ["Cantina Azul", "Bistro 21", "La Piazza", "Sushi Go", "Casa Verde"]


def random_table() -> str:
    return str(random.randint(1, TOTAL_TABLES))


# =============================================================================
# SETUP
# =============================================================================

async def open_establishment(client: httpx.AsyncClient) -> str:
    """Register a throwaway establishment and open it."""
    response = await client.post(
        f"{API_BASE_URL}/api/establishments",
        json={
            "name": random.choice(RESTAURANT_NAMES),
            "phone": f"555-{random.randint(100, 999)}-{random.randint(1000, 9999)}",
        },
    )
    response.raise_for_status()
    establishment_id = response.json()["establishment_id"]

    response = await client.put(
        f"{API_BASE_URL}/api/establishments/{establishment_id}/settings",
        json={
            "timeGreen": 60,
            "timeYellow": 180,
            "qtyGreen": 2,
            "qtyYellow": 4,
            "totalTables": TOTAL_TABLES,
        },
    )
    response.raise_for_status()

    response = await client.post(
        f"{API_BASE_URL}/api/establishments/{establishment_id}/heartbeat",
        json={"is_open": True},
    )
    response.raise_for_status()
    return establishment_id


# =============================================================================
# CUSTOMERS & STAFF
# =============================================================================

async def send_call(
    client: httpx.AsyncClient,
    establishment_id: str,
    call_num: int,
) -> dict[str, Any]:
    """A customer raises a random call."""
    payload = {"table_number": random_table(), "type": random.choice(CALL_TYPES)}
    start_time = time.time()

    try:
        response = await client.post(
            f"{API_BASE_URL}/api/establishments/{establishment_id}/calls",
            json=payload,
            timeout=30.0
        )
        elapsed = round(time.time() - start_time, 3)

        if response.status_code == 200:
            return {
                "num": call_num,
                "success": True,
                "changed": 1,
                "time": elapsed,
                "mode": "customer",
            }
        return {
            "num": call_num,
            "success": False,
            "error": response.text[:100],
            "time": elapsed,
            "mode": "customer",
        }
    except Exception as e:
        elapsed = round(time.time() - start_time, 3)
        return {
            "num": call_num,
            "success": False,
            "error": str(e)[:100],
            "time": elapsed,
            "mode": "customer",
        }


async def send_staff_action(
    client: httpx.AsyncClient,
    establishment_id: str,
    action_num: int,
) -> dict[str, Any]:
    """A waiter taps a random table on a (possibly stale) board."""
    action = random.choice(STAFF_ACTIONS)
    table = random_table()
    base = f"{API_BASE_URL}/api/establishments/{establishment_id}/tables/{table}"
    if action in ("attend", "cancel"):
        url = f"{base}/calls/{random.choice(CALL_TYPES)}/{action}"
    else:
        url = f"{base}/{action}"
    start_time = time.time()

    try:
        response = await client.post(url, timeout=30.0)
        elapsed = round(time.time() - start_time, 3)

        if response.status_code == 200:
            return {
                "num": action_num,
                "success": True,
                "action": action,
                "changed": response.json().get("changed", 0),
                "time": elapsed,
                "mode": "staff",
            }
        return {
            "num": action_num,
            "success": False,
            "action": action,
            "error": response.text[:100],
            "time": elapsed,
            "mode": "staff",
        }
    except Exception as e:
        elapsed = round(time.time() - start_time, 3)
        return {
            "num": action_num,
            "success": False,
            "action": action,
            "error": str(e)[:100],
            "time": elapsed,
            "mode": "staff",
        }


# =============================================================================
# MAIN SIMULATION RUNNER
# =============================================================================

async def print_board(client: httpx.AsyncClient, establishment_id: str) -> None:
    response = await client.get(f"{API_BASE_URL}/api/establishments/{establishment_id}/board")
    response.raise_for_status()
    board = response.json()

    statuses = Counter(t["status"] for t in board["tables"])
    print(f"\n🚦 BOARD ({board['name']}, open: {board['is_open']})")
    for status in ("RED", "YELLOW", "GREEN", "IDLE"):
        print(f"   {status:<7} {statuses.get(status, 0)} table(s)")


async def run_simulation(
    num_calls: int = TOTAL_CALLS,
    export: bool = False,
) -> dict[str, Any]:
    """
    Run the chaos simulation.

    Args:
        num_calls: Number of customer calls (and as many staff actions)
        export: Queue an Excel export of the call history at the end
    """
    print("=" * 70)
    print("🔥 CHAOS SIMULATION - CONCURRENT CALLS & STAFF ACTIONS")
    print("=" * 70)
    print(f"📋 Customer Calls: {num_calls}")
    print(f"🎯 Target: {API_BASE_URL}")
    print(f"⏰ Started: {datetime.now().strftime('%H:%M:%S')}")
    print("=" * 70)

    start_time = time.time()

    async with httpx.AsyncClient() as client:
        establishment_id = await open_establishment(client)
        print(f"\n🏠 Establishment {establishment_id} open with {TOTAL_TABLES} tables")

        print("\n🚀 Firing customer calls...\n")
        call_results = await asyncio.gather(
            *(send_call(client, establishment_id, i + 1) for i in range(num_calls))
        )

        print("🚀 Firing staff actions...\n")
        staff_results = await asyncio.gather(
            *(send_staff_action(client, establishment_id, i + 1) for i in range(num_calls))
        )

        response = await client.get(f"{API_BASE_URL}/api/establishments/{establishment_id}/calls")
        response.raise_for_status()
        still_active = len(response.json())

        await print_board(client, establishment_id)

        if export:
            response = await client.post(f"{API_BASE_URL}/api/establishments/{establishment_id}/export")
            if response.status_code == 200:
                print(f"\n📤 Export queued: task {response.json().get('task_id')}")
            else:
                print(f"\n⚠️ Export failed: {response.text[:100]}")

    total_time = round(time.time() - start_time, 2)
    results = list(call_results) + list(staff_results)
    successful = [r for r in results if r["success"]]
    failed = [r for r in results if not r["success"]]

    raised = sum(1 for r in call_results if r["success"])
    resolved = sum(
        r["changed"] for r in staff_results
        if r["success"] and r["action"] in ("attend", "cancel", "close")
    )

    print("\n" + "=" * 70)
    print("📊 SIMULATION RESULTS")
    print("=" * 70)

    print(f"\n✅ Successful Requests: {len(successful)}/{len(results)}")
    print(f"❌ Failed Requests: {len(failed)}/{len(results)}")
    print(f"⏱️  Total Time: {total_time}s")

    print(f"\n🛎️ Calls raised: {raised}")
    print(f"   Resolved by staff: {resolved}")
    print(f"   Still active: {still_active}")
    if raised == resolved + still_active:
        print("   ✅ Every call accounted for exactly once")
    else:
        print("   ⚠️ Call accounting mismatch!")

    actions = Counter(r["action"] for r in staff_results if r["success"])
    no_ops = sum(1 for r in staff_results if r["success"] and r["changed"] == 0)
    print(f"\n🧑‍🍳 Staff actions: {dict(actions)} ({no_ops} no-op)")

    if successful:
        avg_time = round(sum(r["time"] for r in successful) / len(successful), 3)
        print(f"\n📈 Performance Metrics:")
        print(f"   Average Response: {avg_time}s")
        print(f"   Fastest: {min(r['time'] for r in successful)}s")
        print(f"   Slowest: {max(r['time'] for r in successful)}s")

    if failed:
        print(f"\n⚠️  Failed Request Details (showing first 5):")
        for f in failed[:5]:
            print(f"   #{f['num']} [{f['mode']}]: {f.get('error', 'Unknown error')}")

    if export:
        print(f"\n🔍 Verify with: python scripts/verify.py {establishment_id}")
    print("=" * 70)

    return {
        "establishment_id": establishment_id,
        "raised": raised,
        "resolved": resolved,
        "still_active": still_active,
        "failed": len(failed),
        "total_time": total_time,
    }


async def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Restaurant Call Chaos Simulation")
    parser.add_argument(
        "--calls",
        type=int,
        default=TOTAL_CALLS,
        help=f"Number of customer calls (default: {TOTAL_CALLS})"
    )
    parser.add_argument(
        "--export",
        action="store_true",
        help="Queue a call history export at the end (needs a Celery worker)"
    )

    args = parser.parse_args()

    async with httpx.AsyncClient() as client:
        try:
            response = await client.get(f"{API_BASE_URL}/health", timeout=5.0)
            print(f"🩺 Health: {response.json().get('status')}")
        except httpx.HTTPError as e:
            print(f"❌ API not reachable at {API_BASE_URL}: {e}")
            return

    await run_simulation(num_calls=args.calls, export=args.export)


if __name__ == "__main__":
    asyncio.run(main())
