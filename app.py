#!/usr/bin/env python3
"""
Prism - Entry Point
====================
One-command startup for the Prism game server dashboard.

Usage:
    python app.py              # Start with settings from config.yaml
    python app.py --port 9000  # Start on custom port

This script:
    1. Creates config.yaml from config.yaml.example on first run
    2. Loads environment variables from .env (panel keys, session secret)
    3. Configures logging (console + data/logs/prism.log)
    4. Starts the uvicorn server with the FastAPI app factory
"""

import argparse
import os
import shutil

import uvicorn
from dotenv import load_dotenv

from prism.config import DEFAULTS, ConfigManager
from prism.logging_setup import configure_logging


def main():
    """Parse arguments, load config, and start the web server."""

    # -- Parse command-line arguments ------------------------------------------
    parser = argparse.ArgumentParser(
        description="Prism - Game server dashboard for Pterodactyl panels",
    )
    parser.add_argument(
        "--port", type=int, default=None,
        help="Port number for the dashboard (overrides config.yaml)",
    )
    parser.add_argument(
        "--host", type=str, default=None,
        help="Host binding address (overrides config.yaml)",
    )
    parser.add_argument(
        "--log-level", type=str, default="INFO",
        help="Log level for the prism logger (DEBUG, INFO, WARNING, ...)",
    )
    args = parser.parse_args()

    project_dir = os.path.dirname(os.path.abspath(__file__))

    # -- Ensure configuration files exist --------------------------------------
    config_path = os.path.join(project_dir, "config.yaml")
    config_example = os.path.join(project_dir, "config.yaml.example")
    if not os.path.exists(config_path) and os.path.exists(config_example):
        shutil.copy2(config_example, config_path)
        print("[INIT] Created config.yaml from template")

    env_path = os.path.join(project_dir, ".env")
    if os.path.exists(env_path):
        load_dotenv(env_path)

    config_manager = ConfigManager(project_dir)
    config = config_manager.load()
    configure_logging(args.log_level.upper(), os.path.join(config_manager.data_dir, "logs"))

    host = args.host or config["web"].get("host", DEFAULTS["web"]["host"])
    port = args.port or config["web"].get("port", DEFAULTS["web"]["port"])

    # -- Print startup banner --------------------------------------------------
    print()
    print("  Prism 0.5.0")
    print(f"  Dashboard : http://{host}:{port}")
    print(f"  Panel     : {config['panel']['url']}")
    for name, masked in config_manager.masked_secrets().items():
        print(f"  {name:<28}: {masked or '(not set)'}")
    print()

    # -- Start the web server --------------------------------------------------
    uvicorn.run(
        "prism.main:create_app",
        factory=True,
        host=host,
        port=port,
        reload=False,
        log_level="info",
    )


if __name__ == "__main__":
    main()
