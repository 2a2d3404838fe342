"""
Firefly Offline Sync — Entry Point.

Single entry point: `python main.py` opens the offline store and keeps it
in sync with the remote store until interrupted, then flushes and closes.
"""

import asyncio
import logging

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

from firefly.app import run_sync_daemon

if __name__ == "__main__":
    try:
        asyncio.run(run_sync_daemon())
    except KeyboardInterrupt:
        logging.getLogger(__name__).info("Interrupted, shutting down")
