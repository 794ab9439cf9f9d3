#!/usr/bin/env python3
"""Quick connectivity check of every external dependency of the swap path.

Usage: python scripts/verify_connectivity.py [TOKEN_MINT]

Probes the configured RPC endpoints, asks the aggregator for a small
base -> USDC quote and, when a token mint is given, reports venue pool
eligibility and discovery listings for it. Nothing is signed or sent.
"""

import asyncio
import sys

from swapshield.config import USDC_MINT, get_settings
from swapshield.main import build_aggregator, build_discovery, build_pool, build_venues
from swapshield.venues.base import Eligibility

# Colors for output
GREEN = "\033[92m"
RED = "\033[91m"
YELLOW = "\033[93m"
RESET = "\033[0m"
CHECK = "✓"
CROSS = "✗"
WARN = "⚠"

# 0.01 of the base asset
PROBE_AMOUNT = 10_000_000


def print_status(name: str, success: bool, message: str = ""):
    """Print status with color."""
    if success:
        print(f"  {GREEN}{CHECK}{RESET} {name}" + (f" - {message}" if message else ""))
    else:
        print(f"  {RED}{CROSS}{RESET} {name}" + (f" - {message}" if message else ""))


def print_warning(name: str, message: str = ""):
    """Print warning."""
    print(f"  {YELLOW}{WARN}{RESET} {name}" + (f" - {message}" if message else ""))


async def check_rpc(settings):
    """Probe every configured RPC endpoint."""
    print("\n🌐 Checking RPC endpoints...")

    pool = build_pool(settings)
    try:
        summary = await pool.check_all()
        for endpoint in pool.get_stats()["endpoints"]:
            latency = endpoint["avg_response_time_ms"]
            print_status(
                settings.redact_url(endpoint["url"]),
                endpoint["healthy"],
                f"{latency} ms" if latency is not None else "no response",
            )
        return summary["healthy"] > 0
    finally:
        await pool.stop()


async def check_aggregator(settings):
    """Request a small quote from the aggregator."""
    print("\n🔄 Checking aggregator...")

    aggregator = build_aggregator(settings)
    try:
        routes = await aggregator.get_routes(
            settings.base_mint, USDC_MINT, PROBE_AMOUNT, settings.default_slippage_bps
        )
    except Exception as e:
        print_status(f"Quote ({settings.aggregator_tier} tier)", False, str(e))
        return False

    if not routes:
        print_warning("Quote", "aggregator returned no route")
        return False
    route = routes[0]
    print_status(
        f"Quote ({settings.aggregator_tier} tier)",
        True,
        f"{route.out_amount} raw USDC via {' > '.join(route.venues)}",
    )
    return True


async def check_token(settings, token_mint: str):
    """Report venue eligibility and discovery listings for a token."""
    print(f"\n🏊 Checking venues for {token_mint}...")

    all_ok = True
    for venue in build_venues(settings, connection=None):
        check = await venue.check_pool(token_mint)
        if check.status == Eligibility.UNKNOWN:
            print_warning(venue.name, check.reason or "eligibility unknown")
            all_ok = False
        else:
            detail = check.reason or (
                f"liquidity ${check.liquidity_usd:,.0f}" if check.liquidity_usd else "pool found"
            )
            print_status(venue.name, check.eligible, detail)

    try:
        listings = await build_discovery(settings).get_listings(token_mint)
        for listing in listings[:5]:
            print_status(
                f"listed on {listing.dex_id}", True, f"liquidity ${listing.liquidity_usd:,.0f}"
            )
        if not listings:
            print_warning("Discovery", "no listings")
    except Exception as e:
        print_status("Discovery", False, str(e))
        all_ok = False

    return all_ok


async def main():
    """Run all connectivity checks."""
    print("=" * 60)
    print("     SWAPSHIELD CONNECTIVITY CHECK")
    print("=" * 60)

    settings = get_settings()
    results = {
        "rpc": await check_rpc(settings),
        "aggregator": await check_aggregator(settings),
    }
    if len(sys.argv) > 1:
        results["venues"] = await check_token(settings, sys.argv[1])

    # Summary
    print("\n" + "=" * 60)
    print("     SUMMARY")
    print("=" * 60)

    passed = sum(1 for v in results.values() if v)
    total = len(results)

    for name, success in results.items():
        status = f"{GREEN}{CHECK}{RESET}" if success else f"{RED}{CROSS}{RESET}"
        print(f"  {status} {name.replace('_', ' ').title()}")

    print()
    if passed == total:
        print(f"  {GREEN}All {total} checks passed!{RESET}")
        return 0
    else:
        print(f"  {YELLOW}{passed}/{total} checks passed{RESET}")
        return 1


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
