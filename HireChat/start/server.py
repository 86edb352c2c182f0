"""
Server startup module for HireChat.
Provides the entry point for starting the socket gateway and the HTTP API.
"""

import asyncio
import logging

import uvicorn

from HireChat.api import create_app
from HireChat.config import config
from HireChat.core.logging import auto_configure
from HireChat.core.server import create_server

logger = logging.getLogger(__name__)


async def _serve(host, port, api_port, no_api):
    manager = create_server()

    async with manager.run(host, port):
        if no_api:
            await asyncio.Future()
            return

        # Same loop as the gateway so routes can touch live sockets directly
        api_server = uvicorn.Server(uvicorn.Config(
            create_app(manager),
            host=host,
            port=api_port,
            log_config=None,
        ))
        logger.info("HTTP API listening on http://%s:%s", host, api_port)
        await api_server.serve()


def server(host=None, port=None, api_port=None, no_api=False, env=None):
    """
    Start the socket gateway and, unless disabled, the HTTP API.

    Args:
        host (str): Address to bind both servers to
        port (int): WebSocket port (default: config.DEFAULT_SERVER_PORT)
        api_port (int): HTTP API port (default: config.DEFAULT_API_PORT)
        no_api (bool): If True, serve the socket gateway only
        env (str): Logging environment (development, production, testing)
    """
    auto_configure(env)

    host = host or config.DEFAULT_HOST
    port = config.DEFAULT_SERVER_PORT if port is None else port
    api_port = config.DEFAULT_API_PORT if api_port is None else api_port

    try:
        asyncio.run(_serve(host, port, api_port, no_api))
    except KeyboardInterrupt:
        logger.info("Closed by user.")
