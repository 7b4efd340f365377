#!/usr/bin/env python3
"""
Background runner: relevance refresh, fairness audit and impression rollover on the heartbeat.
"""

import sys
from pathlib import Path

# Load environment variables before the config module reads them
import dotenv
dotenv.load_dotenv()

sys.path.insert(0, str(Path(__file__).parent.parent))

from discovery.core.config import is_heartbeat_enabled, validate_heartbeat_config
from discovery.core.heartbeat import start, stop
from discovery.jobs.tasks import register_discovery_tasks
from discovery.service import DiscoveryService
from discovery.util.logging import logger


def main():
    """Main entry point for the background runner."""
    if not is_heartbeat_enabled():
        logger.error("Heartbeat requires HEARTBEAT_ENABLED=true")
        return 1

    issues = validate_heartbeat_config()
    if issues:
        logger.error(f"Heartbeat configuration invalid: {issues}")
        return 1

    service = DiscoveryService()
    try:
        service.start()
        register_discovery_tasks(service)
        start()
    except KeyboardInterrupt:
        logger.info("Shutting down")
    finally:
        stop()
        service.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
