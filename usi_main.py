from __future__ import annotations

import argparse
import logging
import os
import sys

import uvicorn

from app import create_app
from settings import load_settings
from usi_bridge import UsiBridge

logger = logging.getLogger("usi_main")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str) -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    logging.getLogger().setLevel(level.upper())


def build_bridge(settings) -> UsiBridge:
    return UsiBridge(
        settings.engine_path,
        settings.engine_options,
        args=settings.engine_args,
        cwd=settings.engine_cwd,
    )


def main(argv=None) -> int:
    # logging first, so problems with the options file are reported in format
    configure_logging(os.environ.get("LOG_LEVEL") or "INFO")
    settings = load_settings()
    parser = argparse.ArgumentParser(description="HTTP bridge for a USI engine")
    parser.add_argument("--host", default=settings.host)
    parser.add_argument("--port", type=int, default=settings.port)
    parser.add_argument("--log-level", default=settings.log_level)
    args = parser.parse_args(argv)
    logging.getLogger().setLevel(args.log_level.upper())

    bridge = build_bridge(settings)
    app = create_app(bridge)
    server = uvicorn.Server(uvicorn.Config(app, host=args.host, port=args.port, log_config=None))
    exit_code = 0

    def on_fatal():
        nonlocal exit_code
        logger.error("engine crashed too often; shutting down server")
        exit_code = 1
        server.should_exit = True

    bridge.on_fatal(on_fatal)
    bridge.on_restarted(lambda: logger.info("engine restarted: %s", bridge.engine_info.name))

    logger.info("starting USI bridge on http://%s:%d", args.host, args.port)
    server.run()
    if not server.started:
        logger.error("startup failed; engine could not be initialized")
        return 1
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
