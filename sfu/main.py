"""
Signaling server entrypoint.

Resolves configuration, initialises logging and serves the FastAPI
application with uvicorn.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from typing import Optional

from . import ServerConfig, load_config
from .api.server import create_app
from .utils.logging import configure_logging

LOG = logging.getLogger(__name__)


async def serve(config: ServerConfig) -> None:
    """
    Run the signaling API inside an asyncio loop until a signal arrives.
    """

    import uvicorn

    app = create_app(config=config)
    server_config = uvicorn.Config(
        app=app,
        host=config.listen_ip,
        port=config.listen_port,
        log_config=None,
        log_level=config.log_level.lower(),
        reload=False,
    )
    server = uvicorn.Server(config=server_config)

    def _handle_signal(signum: int, frame: Optional[object]) -> None:
        LOG.info("Received signal %s, shutting down server...", signum)
        server.should_exit = True

    for signame in ("SIGINT", "SIGTERM"):
        signal.signal(getattr(signal, signame), _handle_signal)

    LOG.info(
        "Signaling server listening on %s:%s%s",
        config.listen_ip,
        config.listen_port,
        config.ws_path,
    )
    await server.serve()


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="SFU signaling server")
    parser.add_argument("--config", default=None, help="path to a YAML configuration file")
    parser.add_argument("--host", default=None, help="bind host (overrides listen_ip)")
    parser.add_argument("--port", type=int, default=None, help="bind port (overrides listen_port)")
    parser.add_argument("--log-level", default=None, help="root log level (overrides log_level)")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> ServerConfig:
    config = load_config(args.config)
    if args.host:
        config.listen_ip = args.host
    if args.port:
        config.listen_port = args.port
    if args.log_level:
        config.log_level = args.log_level
    return config


def run(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    config = build_config(args)
    configure_logging(config.log_level)

    try:
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        LOG.info("Server interrupted by user.")


if __name__ == "__main__":
    run()
