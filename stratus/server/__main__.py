"""Run the API server: ``python -m stratus.server``."""

from __future__ import annotations

import argparse
from pathlib import Path

from aiohttp import web

from stratus import config
from stratus.logging import setup_logging, teardown_logging
from stratus.server.app import create_app


def main() -> None:
    parser = argparse.ArgumentParser(description="Stratus API server")
    parser.add_argument("--host", type=str, default=None, help="Overrides [server].host")
    parser.add_argument("--port", type=int, default=None, help="Overrides [server].port")
    parser.add_argument(
        "--project-dir", type=Path, default=None, help="Directory holding stratus.toml"
    )
    args = parser.parse_args()

    raw = config.load_config(project_dir=args.project_dir)
    settings = config.server_settings(raw)
    handlers = setup_logging(config.log_config(raw))
    try:
        app = create_app(timeouts=config.timeouts(raw), agent=config.agent_settings(raw))
        web.run_app(
            app,
            host=args.host or settings.host,
            port=args.port or settings.port,
            print=None,
        )
    finally:
        teardown_logging(handlers)


if __name__ == "__main__":
    main()
