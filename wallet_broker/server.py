"""
WebSocket front end for the broker.

Each WebSocket connection becomes one port. The caller's origin comes from
the handshake's ``Origin`` header; connections from a configured extension
origin are trusted and may use private channels.
"""
import argparse
import asyncio
import json
import logging
import os
import sys
from typing import Dict, List, Optional, Sequence

from websockets.asyncio.server import ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from .broker import Broker
from .collaborators import LocalAccountSigner, StaticPermissionOracle, Web3Broadcaster, Web3RpcForwarder
from .config import BrokerConfig
from .transport import Message, Port

logger = logging.getLogger(__name__)

PRIVATE_KEY_ENV = "WALLET_BROKER_PRIVATE_KEY"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class WebSocketPort(Port):
    """Port backed by a server-side WebSocket connection."""

    def __init__(self, websocket: ServerConnection, origin: Optional[str] = None, trusted: bool = False):
        super().__init__(origin=origin, trusted=trusted)
        self.websocket = websocket

    async def send(self, message: Message) -> None:
        await self.websocket.send(json.dumps(message))


class BrokerServer:
    """
    Serves a broker over WebSocket.

    Args:
        broker: The broker to expose
        host: Interface to bind (defaults to the broker config)
        port: Port to bind (defaults to the broker config)
    """

    def __init__(self, broker: Broker, host: Optional[str] = None, port: Optional[int] = None):
        self.broker = broker
        self.host = host or broker.config.host
        self.port = port if port is not None else broker.config.port

    async def handle_connection(self, websocket: ServerConnection) -> None:
        origin = websocket.request.headers.get("Origin") if websocket.request else None
        trusted = self.broker.config.is_extension_origin(origin)
        port = self.broker.connect(WebSocketPort(websocket, origin=origin, trusted=trusted))
        logger.info(f"Connection from {websocket.remote_address} origin={origin} trusted={trusted}")
        try:
            async for raw in websocket:
                self.broker.multiplexer.handle(port, raw)
        except ConnectionClosed as e:
            logger.info(f"Connection from {origin} closed: {e}")
        finally:
            await self.broker.disconnect(port)

    async def serve_forever(self) -> None:
        async with self.broker:
            async with serve(self.handle_connection, self.host, self.port) as server:
                logger.info(f"Broker listening on ws://{self.host}:{self.port}")
                await server.serve_forever()


def _parse_grants(values: Sequence[str]) -> Dict[str, List[str]]:
    grants: Dict[str, List[str]] = {}
    for value in values:
        origin, sep, capabilities = value.rpartition("=")
        if not sep or not origin:
            raise argparse.ArgumentTypeError(f"Expected ORIGIN=CAP[,CAP...], got {value!r}")
        grants.setdefault(origin, []).extend(c.strip() for c in capabilities.split(",") if c.strip())
    return grants


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Wallet request broker")
    parser.add_argument("--host", help="Interface to bind")
    parser.add_argument("--port", type=int, help="Port to bind")
    parser.add_argument("--chain-id", type=int, dest="default_chain_id", help="Chain id reported to pages")
    parser.add_argument("--rpc-url", help="Ethereum JSON-RPC endpoint")
    parser.add_argument("--extension-origin", action="append", default=[],
                        help="Origin of the trusted approval UI (repeatable)")
    parser.add_argument("--allow", action="append", default=[], metavar="ORIGIN=CAPS",
                        help="Grant capabilities (eth, substrate) to a page origin (repeatable)")
    parser.add_argument("--log-level", help="Log level (DEBUG, INFO, ...)")
    return parser


def build_broker(args: argparse.Namespace, private_key: str) -> Broker:
    config = BrokerConfig.from_env(
        host=args.host,
        port=args.port,
        default_chain_id=args.default_chain_id,
        rpc_url=args.rpc_url,
        extension_origins=tuple(args.extension_origin) or None,
        log_level=args.log_level,
    )
    broadcaster = rpc = w3 = None
    if config.rpc_url:
        rpc = Web3RpcForwarder(config.rpc_url)
        w3 = rpc.w3
        broadcaster = Web3Broadcaster(w3=w3)
    return Broker(
        config,
        signer=LocalAccountSigner(private_key, w3=w3),
        permissions=StaticPermissionOracle(_parse_grants(args.allow)),
        broadcaster=broadcaster,
        rpc=rpc,
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    private_key = os.environ.get(PRIVATE_KEY_ENV)
    if not private_key:
        print(f"ERROR: {PRIVATE_KEY_ENV} environment variable is required", file=sys.stderr)
        return 2

    try:
        broker = build_broker(args, private_key)
    except (ValueError, argparse.ArgumentTypeError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2

    logging.basicConfig(level=broker.config.log_level.upper(), format=LOG_FORMAT)
    try:
        asyncio.run(BrokerServer(broker).serve_forever())
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    return 0


if __name__ == "__main__":
    sys.exit(main())
