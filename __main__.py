"""
Entry point for HireChat.
This module provides a command-line interface to start the realtime server.
"""

import argparse

from HireChat.config import config
from HireChat.start import server


def parse():
    # Initialize argument parser for command line interface
    parser = argparse.ArgumentParser(prog='HireChat', description='HireChat realtime server starter')
    subparsers = parser.add_subparsers(dest='command', required=True, help='Available commands')

    # Setup server command line arguments
    server_parser = subparsers.add_parser('server', help='Startup SERVER (socket gateway and HTTP API)')
    server_parser.add_argument('--host', default=config.DEFAULT_HOST,
                               help=f'SERVER listening address (default: {config.DEFAULT_HOST})')
    server_parser.add_argument('--port', type=int, default=config.DEFAULT_SERVER_PORT,
                               help=f'WebSocket port (default: {config.DEFAULT_SERVER_PORT})')
    server_parser.add_argument('--api-port', type=int, default=config.DEFAULT_API_PORT,
                               help=f'HTTP API port (default: {config.DEFAULT_API_PORT})')
    server_parser.add_argument('--env', choices=['development', 'production', 'testing'], default=None,
                               help='Logging environment (default: $HIRECHAT_ENV or development)')

    # Add 'srv-only' command
    srv_parser = subparsers.add_parser('srv-only', help='Startup socket gateway only')
    srv_parser.add_argument('--host', default=config.DEFAULT_HOST, help='server listening address')
    srv_parser.add_argument('--port', type=int, default=config.DEFAULT_SERVER_PORT, help='server port')
    srv_parser.add_argument('--env', choices=['development', 'production', 'testing'], default=None)

    args = parser.parse_args()

    return args


def main():
    args = parse()

    if args.command == 'server':
        server.server(host=args.host, port=args.port, api_port=args.api_port, env=args.env)
    elif args.command == 'srv-only':
        server.server(host=args.host, port=args.port, no_api=True, env=args.env)
    else:
        raise Exception('Unknown command')


if __name__ == '__main__':
    main()
