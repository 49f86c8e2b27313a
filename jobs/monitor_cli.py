"""CLI entry point for the water monitor service."""

from __future__ import annotations

import argparse
import logging
import signal
import threading

import uvicorn

from common.config import get_settings
from monitor_service.errors import BrokerConnectionError, ConfigurationError
from monitor_service.main import create_app
from monitor_service.service import build_service

logger = logging.getLogger(__name__)


def _serve_health(app, port: int) -> threading.Thread:
    server = uvicorn.Server(uvicorn.Config(app, host="0.0.0.0", port=port, log_level="warning"))
    # uvicorn solo instala signal handlers en el hilo principal
    t = threading.Thread(target=server.run, daemon=True, name="http-health")
    t.start()
    logger.info("HTTP health endpoints listening on :%d", port)
    return t


def main() -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler()],
    )

    p = argparse.ArgumentParser(description="Water quality device monitor (MQTT)")
    p.add_argument("--memory", action="store_true", help="in-memory repositories, no database or redis")
    p.add_argument("--http-port", type=int, default=0, help="serve /health, /ready, /metrics on this port")
    p.add_argument("--no-poller", action="store_true", help="disable the presence poller")
    args = p.parse_args()

    try:
        settings = get_settings()
        service = build_service(settings, memory=args.memory)
    except (ConfigurationError, ValueError) as e:
        logger.error("Invalid configuration: %s", e)
        return 2

    stop = threading.Event()

    def _handle_signal(signum, frame):
        logger.info("Signal %s received, shutting down", signum)
        stop.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    try:
        service.start(start_poller=not args.no_poller)
    except BrokerConnectionError as e:
        logger.error("Cannot start monitor: %s", e)
        return 1

    if args.http_port:
        _serve_health(create_app(service), args.http_port)

    logger.info(
        "Monitor running broker=%s:%d memory=%s",
        settings.mqtt_host, settings.mqtt_port, args.memory,
    )
    try:
        while not stop.wait(1.0):
            pass
    finally:
        service.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
