#!/usr/bin/env python3
"""
Scheduler entrypoint - step timeouts, reminders, notification redelivery and
analytics snapshots on the heartbeat loop.
"""

import argparse
import sys
from pathlib import Path

# Load environment variables from .env file first
import dotenv
dotenv.load_dotenv()

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from reviewgate.core import heartbeat
from reviewgate.core.config import is_scheduler_enabled, validate_scheduler_config
from reviewgate.core.engine import get_engine


def main():
    """Main entry point for the scheduler script."""
    parser = argparse.ArgumentParser(description="Run the ReviewGate timeout scheduler")
    parser.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    args = parser.parse_args()

    engine = get_engine()

    if args.once:
        counts = engine.run_sweep()
        print(f"Sweep complete: {counts}")
        return 0

    if not is_scheduler_enabled():
        print("❌ Scheduler requires SCHEDULER_ENABLED=true")
        return 1

    issues = validate_scheduler_config()
    if issues:
        for issue in issues:
            print(f"❌ {issue}")
        return 1

    try:
        print("🏃 Starting review scheduler")
        engine.start_scheduler(background=False)
    except KeyboardInterrupt:
        print("\n👋 Shutting down gracefully...")
        heartbeat.stop()
    except Exception as e:
        print(f"💥 Critical error: {e}")
        heartbeat.stop()
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
