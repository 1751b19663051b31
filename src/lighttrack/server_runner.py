"""Run the tracking engine with its loopback ingress server."""

from __future__ import annotations

import logging
import socket
import time
from typing import Optional

import uvicorn

from .config import EngineConfig
from .errors import StoreError
from .ingress import create_ingress_app, new_session_token
from .paths import consume_upgrade_marker, get_data_dir, get_db_path
from .probe import create_probe
from .security import create_cipher
from .storage import ActivityStore
from .tracker import ActivityTracker

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_INIT_FAILURE = 1


def port_available(host: str, port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def run_engine(config: Optional[EngineConfig] = None, *, log_level: str = "info") -> int:
    """Start tracking and serve the ingress until interrupted. Returns the exit code."""
    config = config or EngineConfig()
    try:
        data_dir = get_data_dir(config.data_dir)
        consume_upgrade_marker(data_dir)
        store = ActivityStore(get_db_path(data_dir), cipher=create_cipher(data_dir, dev_mode=config.dev_mode))
    except (OSError, StoreError):
        logger.exception("Unable to access the data directory")
        return EXIT_INIT_FAILURE

    serve_ingress = port_available(config.host, config.port)
    if not serve_ingress:
        logger.error("Port %d is already in use. Browser extension server not started.", config.port)
        if config.port_collision_fatal:
            store.close()
            return EXIT_INIT_FAILURE

    tracker = ActivityTracker(store, create_probe())
    tracker.start()
    try:
        if serve_ingress:
            app = create_ingress_app(tracker, token=new_session_token(), dev_mode=config.dev_mode)
            logging.getLogger("uvicorn.error").setLevel(log_level.upper())
            logger.info("Browser extension server listening on http://%s:%d", config.host, config.port)
            uvicorn.run(app, host=config.host, port=config.port, log_level=log_level)
        else:
            _wait_for_interrupt()
    except KeyboardInterrupt:
        logger.info("Interrupted; shutting down.")
    finally:
        tracker.stop()
        store.close()
    return EXIT_OK


def _wait_for_interrupt() -> None:
    while True:
        time.sleep(1.0)
