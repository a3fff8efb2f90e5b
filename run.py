#!/usr/bin/env python3
"""
Carbon Credit Trading - Main runner script

Usage:
    python run.py                      # Run with defaults from config/config.yaml
    python run.py --duration 120       # Run for two minutes, then print statistics
    python run.py --event-log logs/events.jsonl
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from typing import Any

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

from src.agents.manager import AgentManager
from src.config import get_validated_config, load_config
from src.event_log import EventLogger

logger = logging.getLogger("carbon")


async def run_ecosystem(duration: float | None, event_log: str | None, quiet: bool) -> dict[str, Any]:
    """Start every configured agent, run for ``duration`` seconds (or until
    interrupted) and return the final ecosystem statistics."""
    config = get_validated_config()
    event_log = event_log or config.logging.event_log
    manager = AgentManager(config, event_logger=EventLogger(event_log) if event_log else None)

    await manager.initialize()
    if not quiet:
        print("=== Carbon Credit Trading Ecosystem ===")
        print(f"Agents: {sorted(manager.agents)}")
        print(f"Devices: {[d.device_id for d in config.ecosystem.devices]}")
        if event_log:
            print(f"Event log: {event_log}")
        print()

    try:
        if duration is not None:
            await asyncio.sleep(duration)
        else:
            await asyncio.Event().wait()
    except asyncio.CancelledError:
        logger.info("Interrupted, shutting down")
    finally:
        await manager.shutdown()

    return manager.get_ecosystem_statistics()


def main() -> None:
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="Run the carbon credit trading ecosystem"
    )
    parser.add_argument(
        "--config", default="config/config.yaml", help="Path to config file"
    )
    parser.add_argument(
        "--duration",
        type=float,
        default=None,
        help="Seconds to run (runs until interrupted if omitted)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Override logging.level from config",
    )
    parser.add_argument("--event-log", default=None, help="JSONL event log path")
    parser.add_argument("--quiet", action="store_true", help="Suppress output")
    args: argparse.Namespace = parser.parse_args()

    load_config(args.config)
    level = args.log_level or get_validated_config().logging.level
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        stats = asyncio.run(run_ecosystem(args.duration, args.event_log, args.quiet))
    except KeyboardInterrupt:
        return

    if not args.quiet:
        print("=== Final Statistics ===")
        print(json.dumps(stats, indent=2, default=str))


if __name__ == "__main__":
    main()
