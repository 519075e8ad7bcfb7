#!/usr/bin/env python3
"""
Device Farm Coordinator Entry Point.

Runs the coordinator (task queue, resource pools, worker supervision)
with its HTTP API for device workers.

Usage:
    python run_coordinator.py                          # config.yaml defaults
    python run_coordinator.py --config farm.yaml
    python run_coordinator.py --seed-tasks 20          # enqueue work at startup
    python run_coordinator.py --no-api                 # no HTTP surface
"""

import asyncio
import sys
from pathlib import Path

# Ensure project root is in path
project_root = Path(__file__).parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))


async def main():
    """Run the coordinator until interrupted."""
    import argparse
    from coordinator.config import load_config
    from coordinator.main import run_coordinator

    parser = argparse.ArgumentParser(
        description="Device Farm Coordinator - task leasing and resource pools for device workers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python run_coordinator.py                           # Run with config.yaml
    python run_coordinator.py --data-dir /srv/farm      # Custom state directory
    python run_coordinator.py --api-port 9101           # Custom API port
        """
    )

    parser.add_argument(
        "--config",
        default=None,
        help="Path to YAML config (default: config.yaml at project root)"
    )
    parser.add_argument(
        "--data-dir",
        default=None,
        help="Directory for state persistence (overrides config)"
    )
    parser.add_argument(
        "--api-host",
        default=None,
        help="HTTP API host (overrides config)"
    )
    parser.add_argument(
        "--api-port",
        type=int,
        default=None,
        help="HTTP API port (overrides config)"
    )
    parser.add_argument(
        "--no-api",
        action="store_true",
        help="Do not serve the HTTP API"
    )
    parser.add_argument(
        "--seed-tasks",
        type=int,
        default=0,
        help="Enqueue this many create_account tasks after startup"
    )

    args = parser.parse_args()

    config = load_config(args.config)
    if args.data_dir:
        config.data_dir = args.data_dir
    if args.api_host:
        config.api.host = args.api_host
    if args.api_port:
        config.api.port = args.api_port

    print("Starting Device Farm Coordinator...")
    print(f"  Data dir: {config.data_dir}")
    print(f"  Inventory: {config.inventory.source}")
    print(f"  Worker: {' '.join(config.worker.command)}")
    if not args.no_api:
        print(f"  API: {config.api.base_url}")
    print()

    if args.seed_tasks:
        await _run_with_seed(config, args.seed_tasks, serve_api=not args.no_api)
    else:
        await run_coordinator(config, serve_api=not args.no_api)


async def _run_with_seed(config, count: int, serve_api: bool):
    """Start, enqueue count tasks, then keep running until interrupted."""
    from coordinator.main import Orchestrator
    from coordinator.api import start_api_thread

    orchestrator = Orchestrator(config)
    try:
        await orchestrator.start()
        tasks = await orchestrator.enqueue_task(count)
        print(f"  Enqueued tasks {tasks[0].id}-{tasks[-1].id}")
        if serve_api:
            start_api_thread(orchestrator, config.api.host, config.api.port)
        while orchestrator.running:
            await asyncio.sleep(1)
    finally:
        await orchestrator.stop()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nShutdown requested...")
