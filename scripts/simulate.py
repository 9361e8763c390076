"""
Concurrency Simulation Script

Simulates many users clicking counters at the same time and checks that
the weekly summary adds up to exactly what was ordered.
Run from project root: python scripts/simulate.py

Version: 1.0.0
"""

import asyncio
import sys
import os
import random
import time
import argparse
from collections import Counter
from datetime import datetime
from typing import Any

import httpx
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Configuration
API_BASE_URL = "http://localhost:8001"
TOTAL_CLICKS = 100

COMMENTS = ["sin sal", "sin cebolla", "poco picante", "para llevar", None, None]


async def fetch_menu(client: httpx.AsyncClient) -> dict[str, list[str]]:
    response = await client.get(f"{API_BASE_URL}/api/menu", timeout=10.0)
    response.raise_for_status()
    return response.json()["menu"]


async def fetch_users(client: httpx.AsyncClient) -> list[str]:
    response = await client.get(f"{API_BASE_URL}/api/users", timeout=10.0)
    response.raise_for_status()
    return response.json()["users"]


async def send_click(
    client: httpx.AsyncClient,
    click_num: int,
    user_name: str,
    day: str,
    option: str,
    decrement: bool = False,
) -> dict[str, Any]:
    """Send one increment or decrement."""
    endpoint = "decrement" if decrement else "increment"
    payload = {"user_name": user_name, "day": day, "option": option}
    start_time = time.time()

    try:
        response = await client.post(
            f"{API_BASE_URL}/api/orders/{endpoint}",
            json=payload,
            timeout=30.0
        )
        elapsed = round(time.time() - start_time, 3)

        if response.status_code == 200:
            record = response.json().get("record")
            return {
                "click_num": click_num,
                "success": True,
                "applied": record is not None,
                "key": (day, option),
                "delta": -1 if decrement else 1,
                "time": elapsed,
            }
        return {
            "click_num": click_num,
            "success": False,
            "error": response.text[:100],
            "time": elapsed,
        }

    except httpx.HTTPError as e:
        return {
            "click_num": click_num,
            "success": False,
            "error": str(e),
            "time": round(time.time() - start_time, 3),
        }


async def send_comment(client: httpx.AsyncClient, user_name: str, day: str, comment: str) -> bool:
    response = await client.post(
        f"{API_BASE_URL}/api/orders/comments",
        json={"user_name": user_name, "day": day, "comment": comment},
        timeout=30.0,
    )
    return response.status_code == 200


# =============================================================================
# SIMULATION
# =============================================================================

async def run_simulation(total: int, users_count: int, decrement_ratio: float) -> bool:
    print("=" * 60)
    print("🔥 CONCURRENCY SIMULATION")
    print("=" * 60)
    print(f"⏰ Started: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print(f"🎯 Target: {API_BASE_URL}")
    print(f"🖱️ Clicks: {total}")
    print("=" * 60)

    async with httpx.AsyncClient() as client:
        try:
            menu = await fetch_menu(client)
            users = (await fetch_users(client))[:users_count]
        except httpx.HTTPError as e:
            print(f"\n❌ API not reachable: {e}")
            print("   Start the server first: python -m weekly_orders.main")
            return False

        before = await client.get(f"{API_BASE_URL}/api/summary")
        baseline = {
            (day["day"], option): count
            for day in before.json()["orders"]
            for option, count in day["counts"].items()
        }

        # Every user places at least one order so decrements have rows to hit
        clicks = []
        for i in range(total):
            day = random.choice(list(menu))
            option = random.choice(menu[day])
            user = users[i % len(users)]
            decrement = i >= len(users) and random.random() < decrement_ratio
            clicks.append((user, day, option, decrement))

        start = time.time()
        results = await asyncio.gather(*[
            send_click(client, i + 1, *click) for i, click in enumerate(clicks)
        ])
        elapsed = round(time.time() - start, 2)

        # Comments on days each user ordered
        commented = 0
        for result, (user, day, _, decrement) in zip(results, clicks):
            comment = random.choice(COMMENTS)
            if comment and not decrement and result.get("applied"):
                if await send_comment(client, user, day, comment):
                    commented += 1

        summary = (await client.get(f"{API_BASE_URL}/api/summary")).json()

    successes = [r for r in results if r["success"]]
    failures = [r for r in results if not r["success"]]

    print(f"\n📊 RESULTS ({elapsed}s)")
    print(f"   Successful clicks: {len(successes)}")
    print(f"   Failed clicks: {len(failures)}")
    print(f"   Comments added: {commented}")
    if successes:
        avg = sum(r["time"] for r in successes) / len(successes)
        print(f"   Avg response time: {avg:.3f}s")
    for failure in failures[:5]:
        print(f"   ❌ Click #{failure['click_num']}: {failure['error']}")

    # Decrements clamp at zero, so only increments give an exact expectation
    # when no decrement ran
    increments = Counter(r["key"] for r in successes if r["delta"] > 0)
    decrements = [r for r in successes if r["delta"] < 0]

    actual = {
        (day["day"], option): count
        for day in summary["orders"]
        for option, count in day["counts"].items()
    }

    print(f"\n🧮 SUMMARY CHECK")
    print(f"   Summary total: {summary['total']}")
    ok = True
    if not decrements:
        for key, added in increments.items():
            expected = baseline.get(key, 0) + added
            if actual.get(key, 0) != expected:
                ok = False
                print(f"   ⚠️ {key[0]}/{key[1]}: expected {expected}, got {actual.get(key, 0)}")
    else:
        upper = sum(baseline.values()) + sum(increments.values())
        if summary["total"] > upper:
            ok = False
            print(f"   ⚠️ Total {summary['total']} exceeds {upper} placed portions")

    print("\n" + "=" * 60)
    print("✅ SUMMARY CONSISTENT" if ok else "❌ SUMMARY MISMATCH")
    print("=" * 60)
    return ok


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Concurrent counter simulation")
    parser.add_argument("--clicks", type=int, default=TOTAL_CLICKS, help="Number of counter clicks")
    parser.add_argument("--users", type=int, default=5, help="Number of simulated users")
    parser.add_argument("--decrements", type=float, default=0.0, help="Share of clicks that decrement")
    args = parser.parse_args()

    ok = asyncio.run(run_simulation(args.clicks, args.users, args.decrements))
    sys.exit(0 if ok else 1)
