"""
SecureMsg - Relay server using asyncio.

Created by orpheus497

Exposes RelayService over TCP. Requests and responses are
newline-delimited JSON:

    -> {"command": "fetch", "params": {"user_id": "alice"}}
    <- {"success": true, "result": {...bundle...}}
    <- {"success": false, "error": "User alice not found", "code": "E402"}
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from .config import Config
from .constants import MAX_RELAY_LINE_SIZE, RELAY_READ_CHUNK, RELAY_STORAGE_FILENAME
from .errors import ErrorCode, MessagingError
from .logging_setup import setup_logging
from .relay import JsonFileRelayStore, MemoryRelayStore, RelayService

logger = logging.getLogger(__name__)


class RelayCommand:
    """Command names understood by the relay."""

    PUBLISH = "publish"
    FETCH = "fetch"
    CLAIM = "claim"
    ENQUEUE = "enqueue"
    DRAIN = "drain"
    LIST_USERS = "list_users"
    PING = "ping"


class RelayServer:
    """Asyncio TCP front end for a RelayService."""

    def __init__(self, service: RelayService, host: str = "127.0.0.1", port: int = 3000):
        """
        Initialize server.

        Args:
            service: Mailbox service to expose
            host: Interface to bind
            port: Port to bind (0 picks a free port)
        """
        self.service = service
        self.host = host
        self.port = port
        self.running = False
        self.server: Optional[asyncio.AbstractServer] = None

    async def start(self) -> None:
        """Bind the listening socket. The bound port is stored in self.port."""
        self.server = await asyncio.start_server(self._handle_client, self.host, self.port)
        self.port = self.server.sockets[0].getsockname()[1]
        self.running = True
        logger.info(f"Relay server listening on {self.host}:{self.port}")

    async def stop(self) -> None:
        """Stop accepting connections and close the listening socket."""
        self.running = False
        if self.server:
            self.server.close()
            await self.server.wait_closed()
            self.server = None
        logger.info("Relay server stopped")

    async def serve_forever(self) -> None:
        if self.server is None:
            await self.start()
        try:
            await self.server.serve_forever()
        finally:
            await self.stop()

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """Serve newline-delimited JSON requests until the peer disconnects."""
        address = writer.get_extra_info("peername")
        logger.debug(f"Client connected from {address}")

        buffer = b""
        try:
            while self.running:
                data = await reader.read(RELAY_READ_CHUNK)
                if not data:
                    break

                buffer += data
                if len(buffer) > MAX_RELAY_LINE_SIZE and b"\n" not in buffer:
                    logger.warning(f"Request from {address} exceeds {MAX_RELAY_LINE_SIZE} bytes")
                    await self._send(writer, self._error("Request too large", ErrorCode.E403_INVALID_COMMAND))
                    break

                while b"\n" in buffer:
                    line, buffer = buffer.split(b"\n", 1)
                    if not line.strip():
                        continue
                    try:
                        request = json.loads(line.decode("utf-8"))
                    except (json.JSONDecodeError, UnicodeDecodeError) as e:
                        logger.warning(f"Invalid JSON from client: {e}")
                        response = self._error("Invalid JSON", ErrorCode.E403_INVALID_COMMAND)
                    else:
                        response = self.process_command(request)
                    await self._send(writer, response)
        except (ConnectionError, asyncio.IncompleteReadError) as e:
            logger.debug(f"Client {address} disconnected: {e}")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError as e:
                logger.debug(f"Error closing writer: {e}")

    @staticmethod
    async def _send(writer: asyncio.StreamWriter, response: Dict[str, Any]) -> None:
        writer.write((json.dumps(response) + "\n").encode("utf-8"))
        await writer.drain()

    @staticmethod
    def _error(message: str, code: ErrorCode) -> Dict[str, Any]:
        return {"success": False, "error": message, "code": code.value}

    def process_command(self, request: Dict[str, Any]) -> Dict[str, Any]:
        """Dispatch one decoded request to the service."""
        if not isinstance(request, dict):
            return self._error("Request must be a JSON object", ErrorCode.E403_INVALID_COMMAND)

        command = request.get("command")
        params = request.get("params") or {}
        if not isinstance(params, dict):
            return self._error("params must be a JSON object", ErrorCode.E403_INVALID_COMMAND)

        try:
            if command == RelayCommand.PUBLISH:
                self.service.publish(params["bundle"])
                result: Any = None
            elif command == RelayCommand.FETCH:
                result = self.service.fetch(params["user_id"])
            elif command == RelayCommand.CLAIM:
                result = self.service.claim(params["user_id"])
            elif command == RelayCommand.ENQUEUE:
                self.service.enqueue(params["recipient_id"], params["package"])
                result = None
            elif command == RelayCommand.DRAIN:
                result = self.service.drain(params["user_id"])
            elif command == RelayCommand.LIST_USERS:
                result = self.service.list_users()
            elif command == RelayCommand.PING:
                result = "pong"
            else:
                logger.warning(f"Unknown command: {command}")
                return self._error(f"Unknown command: {command}", ErrorCode.E403_INVALID_COMMAND)
        except KeyError as e:
            return self._error(f"Missing parameter: {e}", ErrorCode.E002_INVALID_ARGUMENT)
        except MessagingError as e:
            logger.info(f"Command {command} failed: {e}")
            return self._error(e.message, e.code)

        return {"success": True, "result": result}


def build_service(data_dir: Optional[Path], storage_file: Optional[str] = None) -> RelayService:
    """Relay service backed by a JSON file in data_dir, or memory if data_dir is None."""
    if data_dir is None:
        return RelayService(MemoryRelayStore())
    return RelayService(JsonFileRelayStore(Path(data_dir) / (storage_file or RELAY_STORAGE_FILENAME)))


async def async_main(argv=None) -> None:
    """Async main entry point for the relay server."""
    parser = argparse.ArgumentParser(description="SecureMsg relay - mailbox server for key bundles and messages")
    parser.add_argument("--config", type=str, default=None, help="Path to config.toml")
    parser.add_argument("--host", type=str, default=None, help="Interface to bind")
    parser.add_argument("--port", type=int, default=None, help="Port to bind")
    parser.add_argument("--data-dir", type=str, default=None, help="Directory for relay storage")
    parser.add_argument("--memory", action="store_true", help="Keep storage in memory only")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args(argv)

    config = Config(Path(args.config) if args.config else None)
    data_dir = Path(args.data_dir or config.get("client", "data_dir")).expanduser().resolve()
    setup_logging(config, None if args.memory else data_dir, debug=args.debug)

    service = build_service(None if args.memory else data_dir, config.get("relay", "storage_file"))
    server = RelayServer(
        service,
        host=args.host or config.get("relay", "host"),
        port=args.port if args.port is not None else config.get("relay", "port"),
    )
    try:
        await server.start()
    except OSError as e:
        logger.error(f"Failed to start relay server: {e}")
        sys.exit(1)
    await server.serve_forever()


def main():
    """Main entry point - runs async_main."""
    try:
        asyncio.run(async_main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
