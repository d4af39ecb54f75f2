#!/usr/bin/env python3
"""
Run Ad Pod Simulation

Command-line interface that runs simulated ad opportunities through the full
engine: planning, parallel bid fan-out, slot auctions and learning.

Usage:
    # 100 midroll opportunities against paper demand (default)
    python scripts/run_pod_simulation.py

    # Preroll on connected TV with a 45s budget
    python scripts/run_pod_simulation.py --position preroll --device ctv --budget 45

    # Live demand sources (DEMAND_BASE_URL must point at real endpoints)
    python scripts/run_pod_simulation.py --live --count 5

    # Consult a strategy advisor
    python scripts/run_pod_simulation.py --advisor-url http://localhost:3000/api/llm/optimize-pod

    # Write one JSON line per pod
    python scripts/run_pod_simulation.py --output data/pod_outcomes.jsonl

    # Show configuration and exit
    python scripts/run_pod_simulation.py --status

Environment Variables:
    DEMAND_BASE_URL - Base URL of the demand source endpoints
    ADVISOR_ENDPOINT - Strategy advisor URL (optional)
    OUTCOME_LOG_PATH - Default JSONL outcome path
"""

import argparse
import asyncio
import logging
import random
import sys
from datetime import datetime
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from adpod.config import (
    ADVISOR_ENDPOINT,
    DEMAND_BASE_URL,
    DEFAULT_SLOT_TIMEOUT_MS,
    LOGS_DIR,
    OUTCOME_LOG_PATH,
    REVENUE_TARGETS,
)
from adpod.demand.paper import PaperBidClient, PaperSourceProfile
from adpod.demand.registry import DemandSourceRegistry
from adpod.learning.sink import JsonlOutcomeSink, LoggingOutcomeSink
from adpod.models import Opportunity, UserContext
from adpod.optimizer import AdPodOptimizer, NoDemandSourcesError
from adpod.planner.advisor import HttpStrategyAdvisor

CATEGORIES = ["news", "sports", "entertainment", "business", "technology"]


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for the simulation."""
    level = logging.DEBUG if verbose else logging.INFO

    # Create formatters
    console_format = "%(asctime)s [%(levelname)s] %(message)s"
    file_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(console_format, datefmt="%H:%M:%S"))

    # File handler
    LOGS_DIR.mkdir(parents=True, exist_ok=True)
    log_file = LOGS_DIR / f"pod_simulation_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"

    file_handler = logging.FileHandler(log_file)
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(file_format))

    # Configure root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

    # Reduce noise from external libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    print(f"Logs will be written to: {log_file}")


def build_paper_client(registry: DemandSourceRegistry, seed: int) -> PaperBidClient:
    """Paper demand that behaves like the registry's configured sources."""
    profiles = {}
    for i, source in enumerate(registry.all()):
        slug = source.name.lower().replace(" ", "")
        profiles[source.name] = PaperSourceProfile(
            fill_probability=source.fill_rate,
            price=source.avg_price,
            price_jitter=source.avg_price * 0.25,
            latency_ms=source.avg_latency_ms * 0.4,
            advertiser_domains=[f"brand{j}.{slug}.example" for j in range(4)],
            categories=list(source.competitive_categories) or [f"iab{i + 1}"],
            shape="seatbid" if i % 2 else "simple",
            error_rate=0.02,
            malformed_rate=0.01,
            respect_exclusions=True,
        )
    return PaperBidClient(profiles, seed=seed)


def random_opportunity(rng: random.Random, position: str, device: str, budget: int) -> Opportunity:
    return Opportunity(
        position=position,
        max_ad_duration=budget,
        category=rng.choice(CATEGORIES),
        device=device,
        video_length=rng.choice([300, 600, 1800, 3600]),
        user=UserContext(
            id=f"user-{rng.randint(1, 10_000)}",
            ad_engagement_score=round(rng.uniform(5, 60), 1),
        ),
    )


def show_status() -> None:
    """Show configuration without running anything."""
    print("\n" + "=" * 70)
    print("Ad Pod Engine Configuration")
    print("=" * 70)

    print(f"\nDemand base URL: {DEMAND_BASE_URL}")
    print(f"Advisor endpoint: {ADVISOR_ENDPOINT or 'NOT CONFIGURED (fallback strategies only)'}")
    print(f"Default slot timeout: {DEFAULT_SLOT_TIMEOUT_MS}ms")
    print("\nRevenue targets:")
    for position, target in REVENUE_TARGETS.items():
        print(f"  {position}: ${target:.2f}")

    registry = DemandSourceRegistry.from_config()
    print("\nDemand sources:")
    for source in registry.all():
        print(
            f"  - {source.name}: ${source.avg_price:.2f} CPM, fill {source.fill_rate:.0%}, "
            f"{source.avg_latency_ms:.0f}ms, timeout {source.timeout_ms}ms"
        )
    print("\n" + "=" * 70)


async def run_simulation(args: argparse.Namespace) -> None:
    """
    Run the simulated opportunities.

    Args:
        args: Parsed command-line arguments
    """
    mode_str = "LIVE" if args.live else "PAPER"
    rng = random.Random(args.seed)

    print("\n" + "=" * 70)
    print(f"Ad Pod Simulation ({mode_str} MODE)")
    print("=" * 70)
    print(f"\n  Opportunities: {args.count}")
    print(f"  Position: {args.position} | Device: {args.device} | Budget: {args.budget}s\n")

    registry = DemandSourceRegistry.from_config()
    client = None if args.live else build_paper_client(registry, args.seed)
    advisor_url = args.advisor_url or ADVISOR_ENDPOINT
    advisor = HttpStrategyAdvisor(advisor_url) if advisor_url else None
    sink = JsonlOutcomeSink(args.output) if args.output else LoggingOutcomeSink()

    optimizer = AdPodOptimizer(
        paper_mode=not args.live,
        registry=registry,
        client=client,
        advisor=advisor,
        sink=sink,
        seed=args.seed,
    )

    try:
        for _ in range(args.count):
            opportunity = random_opportunity(rng, args.position, args.device, args.budget)
            await optimizer.run(opportunity)
    except NoDemandSourcesError as e:
        print(f"\nError: {e}")
    except KeyboardInterrupt:
        print("\nShutdown requested by user...")
    finally:
        await optimizer.close()

        status = optimizer.get_status()
        engine_state = status["engine_state"]

        print("\n" + "=" * 70)
        print("Session Summary")
        print("=" * 70)
        print(f"  Pods run: {engine_state['pods_run']}")
        print(f"  Slots filled: {engine_state['slots_filled']}/{engine_state['slots_attempted']}")
        print(f"  Fill rate: {engine_state['fill_rate']:.1%}")
        print(f"  Total revenue: ${engine_state['total_revenue']:.4f}")
        print(
            f"  Strategies: {engine_state['advisor_strategies']} advisor, "
            f"{engine_state['fallback_strategies']} fallback"
        )
        dispatch = status["dispatch"]
        print(f"  Source calls: {dispatch['calls']} ({dispatch['timeouts']} timeouts, {dispatch['errors']} errors)")

        print("\nSources after learning:")
        for source in status["sources"]:
            print(f"  - {source['name']}: ${source['avg_price']:.2f} CPM, fill {source['fill_rate']:.1%}")
        print("\n" + "=" * 70)


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Run simulated ad opportunities through the ad pod engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/run_pod_simulation.py                          # 100 paper midrolls
  python scripts/run_pod_simulation.py --position preroll       # Preroll pods
  python scripts/run_pod_simulation.py --device ctv --budget 60 # CTV floors
  python scripts/run_pod_simulation.py --status                 # Show configuration
        """,
    )

    mode_group = parser.add_mutually_exclusive_group()
    mode_group.add_argument(
        "--live",
        action="store_true",
        help="Call real demand source endpoints instead of paper demand",
    )
    mode_group.add_argument(
        "--status",
        action="store_true",
        help="Show configuration and exit",
    )

    parser.add_argument("--count", type=int, default=100, help="Number of opportunities (default: 100)")
    parser.add_argument(
        "--position",
        choices=["preroll", "midroll", "postroll"],
        default="midroll",
        help="Ad position (default: midroll)",
    )
    parser.add_argument("--device", default="desktop", help="Device type (default: desktop)")
    parser.add_argument(
        "--budget",
        type=int,
        default=60,
        metavar="SECONDS",
        help="Ad break time budget in seconds (default: 60)",
    )
    parser.add_argument("--seed", type=int, default=42, help="Random seed (default: 42)")
    parser.add_argument("--advisor-url", default="", help="Strategy advisor endpoint")
    parser.add_argument(
        "--output",
        nargs="?",
        const=OUTCOME_LOG_PATH,
        default=None,
        metavar="PATH",
        help=f"Append pod results as JSON lines (default path: {OUTCOME_LOG_PATH})",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    args = parser.parse_args()

    if args.status:
        show_status()
        return

    setup_logging(verbose=args.verbose)
    asyncio.run(run_simulation(args))


if __name__ == "__main__":
    main()
