#!/usr/bin/env python3
"""
Broker Console - Entry Point
==============================
One-command startup for the broker and its management console.

Usage:
    python app.py                          # Start with default settings
    python app.py --config /etc/broker.yaml
    python app.py --tls-cert-file c.pem --tls-key-file k.pem

This script:
    1. Creates a default .env if none exists, then loads it
    2. Loads configuration from config.yaml
    3. Builds the console service (listeners, settings, discovery, API)
    4. Runs until SIGINT/SIGTERM, then shuts everything down

After starting, open the printed management URL in a browser.
"""

import argparse
import asyncio
import logging
import os
import signal
import sys

from dotenv import load_dotenv

from console.config import ConfigManager
from console.errors import ConfigError
from console.service import ConsoleService


logger = logging.getLogger("console")


def main():
    """Parse arguments, load config, and run the service."""

    # -- Parse command-line arguments ------------------------------------------
    parser = argparse.ArgumentParser(
        description="Broker Console - MQTT broker with runtime management",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config", type=str, default=None,
        help="Path to config.yaml (defaults to the project directory)",
    )
    parser.add_argument("--tls-cert-file", type=str, default="", help="TLS certificate file")
    parser.add_argument("--tls-key-file", type=str, default="", help="TLS key file")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # -- Resolve project directory ---------------------------------------------
    project_dir = os.path.dirname(os.path.abspath(__file__))
    config_manager = ConfigManager(project_dir, config_path=args.config)

    # -- Load environment variables from .env ----------------------------------
    if config_manager.ensure_env_file():
        print("[INIT] Created default .env file")
    load_dotenv(config_manager.env_path)

    try:
        config = config_manager.load()
    except ConfigError as e:
        logger.error("%s", e)
        sys.exit(1)

    tls_files = None
    if args.tls_cert_file and args.tls_key_file:
        tls_files = (args.tls_cert_file, args.tls_key_file)

    # -- Print startup banner --------------------------------------------------
    listeners = config["listeners"]
    print()
    print("  ╔══════════════════════════════════════════════╗")
    print("  ║           BROKER CONSOLE v2.0                ║")
    print("  ║   MQTT Broker Runtime Management             ║")
    print("  ╚══════════════════════════════════════════════╝")
    print()
    print(f"  MQTT    : {listeners.get('tcp') or '-'}")
    print(f"  WS      : {listeners.get('ws') or '-'}")
    print(f"  Console : http://{listeners.get('management') or '-'}")
    print()

    # -- Run the service -------------------------------------------------------
    try:
        asyncio.run(_run(ConsoleService(config, tls_files=tls_files)))
    except ConfigError as e:
        logger.error("%s", e)
        sys.exit(1)


async def _run(service: ConsoleService) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    await service.run(stop)


if __name__ == "__main__":
    main()
