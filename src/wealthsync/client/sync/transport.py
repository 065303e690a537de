"""WebSocket transport between the sync engine and the sync backend.

This module provides:
- Transport: Protocol the engine talks to
- WebSocketTransport: Persistent, authenticated WebSocket connection with
  reconnection, heartbeat and acknowledged sends

Architecture:
    SyncEngine ──send()──► WebSocketTransport ──ws──► Sync backend
        ▲                        │
        └──on_message()──────────┘  (sync-update, sync-conflict, sync-ack)

Wire messages (JSON text frames):
    client → server  {"type": "hello", "client_id": ..., "token": ...}
    server → client  {"type": "welcome"} | {"type": "error", "error": ...}
    client → server  {"type": "sync-operation", "ack_id": ..., "operation": {...}}
    server → client  {"type": "ack", "ack_id": ..., "success": bool, "error"?: ...}
    server → client  {"type": "sync-update", "operation": {...}}
    server → client  {"type": "sync-conflict", "conflict": {...}}
    server → client  {"type": "sync-ack", "operation_id": ...}
    client → server  {"type": "heartbeat"}

The connection runs on its own thread with its own asyncio loop. send()
may be called from any other thread and blocks until the server
acknowledges the operation or the timeout expires.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import ssl
import threading
import uuid
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Protocol

import websockets
from websockets.exceptions import WebSocketException

from wealthsync.client.sync.types import SendTimeoutError, TransportError

if TYPE_CHECKING:
    from websockets.asyncio.client import ClientConnection

    from wealthsync.core.config import SyncConfig

logger = logging.getLogger(__name__)

GIVE_UP_MESSAGE = "Unable to connect to sync server"

MessageHandler = Callable[[str, dict[str, Any]], None]


class Transport(Protocol):
    """Protocol for the engine's connection to the sync backend."""

    @property
    def connected(self) -> bool:
        """True while an authenticated connection is open."""
        ...

    def set_handlers(
        self,
        on_connected: Callable[[], None] | None = None,
        on_disconnected: Callable[[], None] | None = None,
        on_message: MessageHandler | None = None,
        on_error: Callable[[str], None] | None = None,
        on_give_up: Callable[[str], None] | None = None,
    ) -> None:
        """Register connection callbacks."""
        ...

    def start(self) -> None:
        """Start connecting in the background."""
        ...

    def stop(self) -> None:
        """Close the connection and stop reconnecting."""
        ...

    def send(self, operation: dict[str, Any], timeout: float) -> None:
        """Send an operation and wait for its acknowledgement.

        Raises:
            SendTimeoutError: If no acknowledgement arrived in time.
            TransportError: If not connected or the server rejected it.
        """
        ...


class HandshakeError(TransportError):
    """The server refused the hello handshake."""


class WebSocketTransport:
    """WebSocket client implementing the Transport protocol.

    Usage:
        transport = WebSocketTransport(config, client_id, token_provider)
        transport.set_handlers(on_connected=..., on_message=...)
        transport.start()

        transport.send(operation.to_dict(), timeout=10.0)

        transport.stop()
    """

    def __init__(
        self,
        config: SyncConfig,
        client_id: str,
        token_provider: Callable[[], str | None],
    ) -> None:
        """Initialize the transport.

        Args:
            config: Sync configuration (URL, timeouts, backoff policy).
            client_id: Stable identifier of this installation.
            token_provider: Returns the auth token, read at connect time.
        """
        if not config.sync_url:
            raise ValueError("WebSocketTransport requires a sync_url")
        self._config = config
        self._client_id = client_id
        self._token_provider = token_provider

        # Connection state
        self._ws: ClientConnection | None = None
        self._connected = False
        self._should_run = False
        self._pending_acks: dict[str, asyncio.Future[dict[str, Any]]] = {}

        # Thread and loop
        self._thread: threading.Thread | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._stop_event: asyncio.Event | None = None  # For interruptible sleep

        # Callbacks
        self._on_connected: Callable[[], None] | None = None
        self._on_disconnected: Callable[[], None] | None = None
        self._on_message: MessageHandler | None = None
        self._on_error: Callable[[str], None] | None = None
        self._on_give_up: Callable[[str], None] | None = None

    @property
    def connected(self) -> bool:
        """Check if currently connected."""
        return self._connected

    @property
    def ws_url(self) -> str:
        """Get the WebSocket URL."""
        return self._config.sync_url or ""

    def set_handlers(
        self,
        on_connected: Callable[[], None] | None = None,
        on_disconnected: Callable[[], None] | None = None,
        on_message: MessageHandler | None = None,
        on_error: Callable[[str], None] | None = None,
        on_give_up: Callable[[str], None] | None = None,
    ) -> None:
        """Set connection callbacks.

        Callbacks run on the transport thread.

        Args:
            on_connected: Called when the handshake succeeded.
            on_disconnected: Called when an established connection is lost.
            on_message: Called with (type, message) for server pushes.
            on_error: Called with an error description.
            on_give_up: Called once reconnection attempts are exhausted.
        """
        self._on_connected = on_connected
        self._on_disconnected = on_disconnected
        self._on_message = on_message
        self._on_error = on_error
        self._on_give_up = on_give_up

    def start(self) -> None:
        """Start the transport in a background thread."""
        if self._thread and self._thread.is_alive():
            logger.warning("WebSocketTransport already running")
            return

        self._should_run = True
        self._thread = threading.Thread(
            target=self._run_loop,
            name="WebSocketTransport",
            daemon=True,
        )
        self._thread.start()
        logger.info("WebSocketTransport started")

    def stop(self) -> None:
        """Stop the transport.

        In-flight sends are abandoned; their callers get a TransportError.
        """
        self._should_run = False

        # Signal stop event to interrupt any sleeps
        if self._loop and self._stop_event:
            with contextlib.suppress(RuntimeError):
                asyncio.run_coroutine_threadsafe(self._signal_stop(), self._loop)

        # Close WebSocket connection
        if self._loop and self._ws:
            with contextlib.suppress(TimeoutError, RuntimeError):
                asyncio.run_coroutine_threadsafe(
                    self._close_connection(), self._loop
                ).result(timeout=2.0)

        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=5.0)
        self._thread = None

        logger.info("WebSocketTransport stopped")

    def send(self, operation: dict[str, Any], timeout: float) -> None:
        """Send an operation and block until it is acknowledged.

        Args:
            operation: Operation in wire representation.
            timeout: Seconds to wait for the acknowledgement.

        Raises:
            SendTimeoutError: If no acknowledgement arrived in time.
            TransportError: If not connected or the server rejected it.
        """
        loop = self._loop
        if not self._connected or loop is None:
            raise TransportError("Not connected to sync server")
        if threading.current_thread() is self._thread:
            raise TransportError("send() must not be called from the transport thread")

        future = asyncio.run_coroutine_threadsafe(self._send_with_ack(operation), loop)
        try:
            ack = future.result(timeout=timeout)
        except TimeoutError as e:
            future.cancel()
            raise SendTimeoutError(
                f"Operation {operation.get('id')} not acknowledged within {timeout:.0f}s"
            ) from e
        except TransportError:
            raise
        except (WebSocketException, OSError) as e:
            raise TransportError(f"Failed to send operation: {e}") from e

        if not ack.get("success"):
            raise TransportError(str(ack.get("error") or "Operation rejected by server"))

    async def _signal_stop(self) -> None:
        """Signal the stop event to interrupt sleeps."""
        if self._stop_event:
            self._stop_event.set()

    def _run_loop(self) -> None:
        """Run the async event loop in a thread."""
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)
        self._stop_event = asyncio.Event()

        try:
            self._loop.run_until_complete(self._connection_loop())
        finally:
            self._loop.close()
            self._loop = None
            self._stop_event = None

    async def _connection_loop(self) -> None:
        """Main connection loop with automatic reconnection."""
        policy = self._config.backoff
        failures = 0

        while self._should_run:
            established = False
            try:
                await self._connect()
                established = True
                failures = 0
                self._notify(self._on_connected)
                await self._run_connected()

            except HandshakeError as e:
                logger.warning("Sync server refused connection: %s", e)
                self._notify(self._on_error, str(e))
            except WebSocketException as e:
                if established:
                    logger.warning("WebSocketTransport disconnected: %s", e)
                logger.debug("WebSocket error: %s", e)
            except (ConnectionRefusedError, OSError, TimeoutError) as e:
                if established:
                    logger.warning("WebSocketTransport connection lost")
                logger.debug("Connection error: %s", e)
            except Exception as e:
                logger.warning("WebSocketTransport error: %s", e)
                logger.debug("Full traceback:", exc_info=True)
            finally:
                await self._close_connection()
                if established:
                    self._notify(self._on_disconnected)

            if not self._should_run:
                break

            if not established:
                failures += 1
                if policy.exhausted(failures):
                    logger.error(
                        "Max reconnection attempts reached (%d), running in offline mode",
                        failures,
                    )
                    self._should_run = False
                    self._notify(self._on_give_up, GIVE_UP_MESSAGE)
                    break

            delay = policy.delay(failures)
            logger.info(
                "Reconnecting in %.1fs (attempt %d/%d)",
                delay,
                failures + 1,
                policy.max_attempts,
            )
            # Use interruptible sleep - will wake on stop signal
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),  # type: ignore[union-attr]
                    timeout=delay,
                )
                break
            except TimeoutError:
                pass

    async def _connect(self) -> None:
        """Open the connection and perform the hello handshake."""
        ssl_context: ssl.SSLContext | None = None
        if self.ws_url.startswith("wss://"):
            ssl_context = ssl.create_default_context()
            if not self._config.verify_ssl:
                ssl_context.check_hostname = False
                ssl_context.verify_mode = ssl.CERT_NONE

        self._ws = await websockets.connect(
            self.ws_url,
            ssl=ssl_context,
            open_timeout=self._config.open_timeout,
            close_timeout=5,
        )

        await self._ws.send(
            json.dumps(
                {
                    "type": "hello",
                    "client_id": self._client_id,
                    "token": self._token_provider(),
                }
            )
        )
        reply = await asyncio.wait_for(self._ws.recv(), timeout=self._config.open_timeout)
        if isinstance(reply, bytes):
            reply = reply.decode("utf-8")
        try:
            data = json.loads(reply)
        except json.JSONDecodeError as e:
            raise HandshakeError(f"Invalid handshake reply: {reply[:100]}") from e

        if not isinstance(data, dict) or data.get("type") != "welcome":
            error = data.get("error") if isinstance(data, dict) else None
            raise HandshakeError(str(error or "Unexpected handshake reply"))

        self._connected = True
        logger.info("WebSocketTransport connected to %s", self.ws_url)

    async def _run_connected(self) -> None:
        """Run while connected - send heartbeats and handle messages."""
        heartbeat_task = asyncio.create_task(self._heartbeat_loop())

        try:
            while self._should_run and self._ws:
                try:
                    # Set a timeout so we can check should_run
                    message = await asyncio.wait_for(self._ws.recv(), timeout=1.0)
                    if isinstance(message, bytes):
                        message = message.decode("utf-8")
                    self._handle_message(message)

                except TimeoutError:
                    continue
                except websockets.ConnectionClosed:
                    logger.info("Connection closed by server")
                    break

        finally:
            heartbeat_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat_task

    async def _heartbeat_loop(self) -> None:
        """Send periodic heartbeats."""
        while self._should_run and self._connected:
            await asyncio.sleep(self._config.heartbeat_interval)
            if self._connected and self._ws:
                try:
                    await self._ws.send(json.dumps({"type": "heartbeat"}))
                except WebSocketException:
                    break

    async def _send_with_ack(self, operation: dict[str, Any]) -> dict[str, Any]:
        """Send one operation and wait for the matching ack frame."""
        if not self._ws or not self._connected:
            raise TransportError("Not connected to sync server")

        ack_id = uuid.uuid4().hex
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending_acks[ack_id] = future
        try:
            await self._ws.send(
                json.dumps({"type": "sync-operation", "ack_id": ack_id, "operation": operation})
            )
            return await future
        finally:
            self._pending_acks.pop(ack_id, None)

    def _handle_message(self, message: str) -> None:
        """Handle incoming message from server.

        Acks are matched to waiting sends here; heartbeats are ignored;
        everything else is handed to on_message.

        Args:
            message: Raw message string.
        """
        try:
            data = json.loads(message)
        except json.JSONDecodeError:
            logger.warning("Invalid message received: %s", message[:100])
            return

        if not isinstance(data, dict) or not isinstance(data.get("type"), str):
            logger.warning("Message without type received: %s", message[:100])
            return

        msg_type = data["type"]

        if msg_type == "ack":
            future = self._pending_acks.get(str(data.get("ack_id")))
            if future is None:
                logger.debug("Ack for unknown send: %s", data.get("ack_id"))
            elif not future.done():
                future.set_result(data)
            return

        if msg_type == "heartbeat":
            return

        if msg_type == "error":
            error = str(data.get("error") or "Unknown socket error")
            logger.error("Sync socket error: %s", error)
            self._notify(self._on_error, error)
            return

        logger.debug("Received message: %s", msg_type)
        self._notify(self._on_message, msg_type, data)

    def _fail_pending_acks(self, reason: str) -> None:
        """Fail every send still waiting for an acknowledgement."""
        for future in list(self._pending_acks.values()):
            if not future.done():
                future.set_exception(TransportError(reason))
        self._pending_acks.clear()

    def _notify(self, callback: Callable[..., None] | None, *args: Any) -> None:
        """Invoke a callback, logging instead of propagating failures."""
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.error("Transport callback %r failed: %s", callback, e)
            logger.debug("Full traceback:", exc_info=True)

    async def _close_connection(self) -> None:
        """Close the WebSocket connection."""
        self._connected = False
        self._fail_pending_acks("Connection closed")
        if self._ws:
            with contextlib.suppress(WebSocketException, OSError):
                await self._ws.close()
            self._ws = None
