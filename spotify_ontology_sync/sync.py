#!/usr/bin/env python3
"""Spotify <-> Ontology Sync - Service Entry Point"""

import asyncio
import fcntl
import logging
import os
import signal
import sys
import time
from pathlib import Path

from spotify_ontology_sync import __version__
from spotify_ontology_sync.core.config import (
    DEFAULT_DATA_DIR,
    ConfigError,
    SyncConfig,
    load_config,
    load_dev_env,
)
from spotify_ontology_sync.core.models import AuthError
from spotify_ontology_sync.core.sync_engine import SyncEngine

LOCK_NAME = ".sync.lock"
LOG_NAME = "spotify_ontology_sync.log"
STALE_LOCK_SECONDS = 1800

logger = logging.getLogger(__name__)


def setup_logging(data_dir: Path) -> None:
    level = getattr(logging, os.environ.get("LOG_LEVEL", "INFO").upper(), logging.INFO)
    data_dir.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=level,
        format=f"%(asctime)s - %(levelname)s - %(name)s - [v{__version__}] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[
            logging.FileHandler(data_dir / LOG_NAME, encoding="utf-8"),
            logging.StreamHandler()
        ]
    )


def acquire_lock(lock_file: Path) -> int | None:
    try:
        # A lock left behind by a killed process would block every restart
        if lock_file.exists():
            age = time.time() - lock_file.stat().st_mtime
            if age > STALE_LOCK_SECONDS:
                logger.warning(f"Removing stale lock file (age: {age:.0f}s)")
                lock_file.unlink(missing_ok=True)

        fd = os.open(str(lock_file), os.O_CREAT | os.O_RDWR)
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        os.write(fd, f"{os.getpid()}\n".encode())
        return fd
    except OSError:
        return None


def release_lock(fd: int, lock_file: Path) -> None:
    try:
        fcntl.flock(fd, fcntl.LOCK_UN)
        os.close(fd)
        lock_file.unlink(missing_ok=True)
    except OSError as e:
        logger.warning(f"Failed to release lock: {e}")


async def run(config: SyncConfig) -> int:
    engine = SyncEngine.from_config(config)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, engine.stop)

    engine.start()
    try:
        await engine.wait_stopped()
    finally:
        engine.stop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
    logger.info("Sync engine stopped")
    return 0


def main() -> int:
    load_dev_env()
    data_dir = Path(os.environ.get("DATA_DIR", DEFAULT_DATA_DIR))
    setup_logging(data_dir)

    try:
        config = load_config()
    except ConfigError as e:
        logger.error(str(e))
        return 1

    lock_file = config.data_dir / LOCK_NAME
    config.data_dir.mkdir(parents=True, exist_ok=True)
    lock_fd = acquire_lock(lock_file)
    if lock_fd is None:
        logger.warning("Another sync running, exiting")
        return 0

    try:
        return asyncio.run(run(config))
    except AuthError as e:
        logger.error(f"Spotify auth failed: {e}")
        return 1
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        return 1
    finally:
        release_lock(lock_fd, lock_file)


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
