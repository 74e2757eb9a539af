"""Allow running as: python -m pricefeed

Usage:
  python -m pricefeed                    # stream + reconciliation
  python -m pricefeed --no-reconciler    # stream only
  python -m pricefeed --log-level DEBUG
"""

import argparse
import asyncio

from pricefeed.config.settings import get_config
from pricefeed.utils.logger import setup_logging


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="Real-time USD token price feed")
    parser.add_argument("--log-level", default=None, help="Overrides LOG_LEVEL")
    parser.add_argument(
        "--no-reconciler",
        action="store_true",
        help="Disable the GeckoTerminal reconciliation task",
    )
    args = parser.parse_args()

    config = get_config()
    setup_logging(log_level=args.log_level or config.log_level)

    from pricefeed.main import PriceFeedOrchestrator

    orchestrator = PriceFeedOrchestrator(config=config, enable_reconciler=not args.no_reconciler)
    asyncio.run(orchestrator.start())


if __name__ == "__main__":
    main()
