"""
SecureMsg - Relay access for messaging clients.

Created by orpheus497

Two interchangeable relay handles share one async interface:

- RelayClient talks to a RelayServer over TCP, one connection per request,
  retrying transport failures with exponential backoff.
- LocalRelay wraps an in-process RelayService (tests, single-host demos).

Both accept and return typed objects (IdentityBundle, MessagePackage) except
drain(), which returns wire dictionaries so the caller can reject malformed
packages one at a time.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

from .constants import (
    DEFAULT_RELAY_HOST,
    DEFAULT_RELAY_PORT,
    MAX_RELAY_LINE_SIZE,
    RELAY_REQUEST_TIMEOUT,
    RELAY_RETRY_ATTEMPTS,
    RELAY_RETRY_BACKOFF_MULTIPLIER,
    RELAY_RETRY_DELAY,
)
from .errors import BundleNotFound, ErrorCode, MessagingError, RelayError, RelayUnavailable
from .keyring import IdentityBundle
from .relay import RelayService

logger = logging.getLogger(__name__)

# Commands that are safe to resend after the relay may have acted on them
RETRYABLE_COMMANDS = frozenset({"ping", "publish", "fetch", "list_users"})


class RelayClient:
    """Async client for a RelayServer."""

    def __init__(
        self,
        host: str = DEFAULT_RELAY_HOST,
        port: int = DEFAULT_RELAY_PORT,
        timeout: float = RELAY_REQUEST_TIMEOUT,
        retry_attempts: int = RELAY_RETRY_ATTEMPTS,
        retry_delay: float = RELAY_RETRY_DELAY,
    ):
        """
        Initialize client.

        Args:
            host: Relay host
            port: Relay port
            timeout: Seconds allowed to connect, and again for the request itself
            retry_attempts: Attempts per request before giving up
            retry_delay: Delay before the first retry; doubles each retry
        """
        self.host = host
        self.port = port
        self.timeout = timeout
        self.retry_attempts = max(1, retry_attempts)
        self.retry_delay = retry_delay

    async def _exchange(self, reader, writer, request: Dict[str, Any]) -> Dict[str, Any]:
        try:
            writer.write((json.dumps(request) + "\n").encode("utf-8"))
            await writer.drain()
            line = await reader.readline()
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError as e:
                logger.debug(f"Error closing writer: {e}")

        if not line:
            raise ConnectionError("Relay closed the connection without responding")
        return json.loads(line.decode("utf-8"))

    async def _send_request(self, command: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        Send one request, retrying transport failures.

        Connection failures are retried for every command. Once a request has
        been written, only commands in RETRYABLE_COMMANDS are retried; the
        relay may already have acted on a drain, claim or enqueue.

        Returns:
            The response's result value

        Raises:
            RelayUnavailable: If every attempt failed to reach the relay
            BundleNotFound: If the relay has no bundle for the requested user
            RelayError: For any other error reported by the relay
        """
        request = {"command": command, "params": params or {}}
        delay = self.retry_delay
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.retry_attempts + 1):
            try:
                reader, writer = await asyncio.wait_for(
                    asyncio.open_connection(self.host, self.port, limit=MAX_RELAY_LINE_SIZE),
                    timeout=self.timeout,
                )
            except (OSError, asyncio.TimeoutError) as e:
                last_error = e
            else:
                try:
                    response = await asyncio.wait_for(
                        self._exchange(reader, writer, request), timeout=self.timeout
                    )
                    break
                except (OSError, asyncio.TimeoutError, json.JSONDecodeError, UnicodeDecodeError) as e:
                    last_error = e
                    if command not in RETRYABLE_COMMANDS:
                        logger.warning(f"Relay request {command} failed after it was sent: {e!r}")
                        raise RelayUnavailable(
                            f"No response from relay at {self.host}:{self.port} for {command}",
                            {"command": command, "error": repr(e)},
                        ) from e

            logger.warning(
                f"Relay request {command} failed (attempt {attempt}/{self.retry_attempts}): {last_error!r}"
            )
            if attempt < self.retry_attempts:
                await asyncio.sleep(delay)
                delay *= RELAY_RETRY_BACKOFF_MULTIPLIER
        else:
            raise RelayUnavailable(
                f"Relay at {self.host}:{self.port} unreachable",
                {"command": command, "error": repr(last_error)},
            ) from last_error

        if not isinstance(response, dict):
            raise RelayError("Relay sent an invalid response", {"command": command})
        if response.get("success"):
            return response.get("result")

        message = response.get("error", "Relay request failed")
        code = response.get("code")
        if code == ErrorCode.E402_BUNDLE_NOT_FOUND.value:
            raise BundleNotFound(message, {"command": command})
        try:
            error_code = ErrorCode(code)
        except ValueError:
            error_code = ErrorCode.E400_RELAY_ERROR
        raise RelayError(message, {"command": command}, code=error_code)

    async def ping(self) -> bool:
        """Check that the relay answers."""
        try:
            return await self._send_request("ping") == "pong"
        except MessagingError:
            return False

    async def publish(self, bundle: IdentityBundle) -> None:
        await self._send_request("publish", {"bundle": bundle.to_dict()})

    async def fetch(self, user_id: str) -> IdentityBundle:
        return IdentityBundle.from_dict(await self._send_request("fetch", {"user_id": user_id}))

    async def claim(self, user_id: str) -> IdentityBundle:
        return IdentityBundle.from_dict(await self._send_request("claim", {"user_id": user_id}))

    async def enqueue(self, recipient_id: str, package) -> None:
        await self._send_request(
            "enqueue", {"recipient_id": recipient_id, "package": package.to_dict()}
        )

    async def drain(self, user_id: str) -> List[Dict[str, Any]]:
        result = await self._send_request("drain", {"user_id": user_id})
        return result if isinstance(result, list) else []

    async def list_users(self) -> List[str]:
        return list(await self._send_request("list_users") or [])


class LocalRelay:
    """In-process relay handle with the RelayClient interface."""

    def __init__(self, service: Optional[RelayService] = None):
        self.service = service or RelayService()

    async def ping(self) -> bool:
        return True

    async def publish(self, bundle: IdentityBundle) -> None:
        self.service.publish(bundle.to_dict())

    async def fetch(self, user_id: str) -> IdentityBundle:
        return IdentityBundle.from_dict(self.service.fetch(user_id))

    async def claim(self, user_id: str) -> IdentityBundle:
        return IdentityBundle.from_dict(self.service.claim(user_id))

    async def enqueue(self, recipient_id: str, package) -> None:
        self.service.enqueue(recipient_id, package.to_dict())

    async def drain(self, user_id: str) -> List[Dict[str, Any]]:
        return self.service.drain(user_id)

    async def list_users(self) -> List[str]:
        return self.service.list_users()
