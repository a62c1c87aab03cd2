"""
JSON-RPC 2.0 connection to the agent CLI.

Messages are framed with an LSP-style ``Content-Length`` header. The
connection works over anything that exposes blocking ``stdin``/``stdout``
byte streams: a spawned process or a wrapped TCP socket. A single daemon
thread reads frames and hands them to the asyncio event loop, so
notifications are delivered to handlers in the order the agent sent them.
"""

import asyncio
import inspect
import itertools
import json
import logging
import threading
from typing import Any, Awaitable, Callable, Optional, Union

logger = logging.getLogger(__name__)

METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32603

NotificationHandler = Callable[[str, dict], None]
RequestHandler = Callable[[dict], Union[Any, Awaitable[Any]]]
CloseHandler = Callable[[Exception], None]


class JsonRpcError(Exception):
    """Error response received from (or sent to) the other side."""

    def __init__(self, code: int, message: str, data: Any = None):
        super().__init__(f"JSON-RPC Error {code}: {message}")
        self.code = code
        self.message = message
        self.data = data


class ConnectionLostError(RuntimeError):
    """The transport closed while requests were still waiting for a response."""


class JsonRpcClient:
    """
    Bidirectional JSON-RPC endpoint.

    Outbound calls are made with :meth:`request` and :meth:`notify`. Inbound
    requests are routed to handlers registered with :meth:`set_request_handler`;
    inbound notifications go to the single handler set with
    :meth:`set_notification_handler`.
    """

    def __init__(self, process: Any):
        """
        Args:
            process: An object with blocking binary ``stdin`` (written to) and
                ``stdout`` (read from) streams, e.g. a ``subprocess.Popen``.
        """
        self.process = process
        self._ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future] = {}
        self._pending_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._request_handlers: dict[str, RequestHandler] = {}
        self._notification_handler: Optional[NotificationHandler] = None
        self._close_handler: Optional[CloseHandler] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._reader: Optional[threading.Thread] = None
        self._running = False

    def set_notification_handler(self, handler: NotificationHandler) -> None:
        self._notification_handler = handler

    def set_request_handler(self, method: str, handler: RequestHandler) -> None:
        self._request_handlers[method] = handler

    def set_close_handler(self, handler: CloseHandler) -> None:
        """Called on the event loop when the peer closes the stream unexpectedly."""
        self._close_handler = handler

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Start the reader thread. Inbound traffic is dispatched onto ``loop``."""
        self._loop = loop or asyncio.get_running_loop()
        self._running = True
        self._reader = threading.Thread(
            target=self._read_loop, name="copilot-jsonrpc-reader", daemon=True
        )
        self._reader.start()

    async def stop(self) -> None:
        """Stop dispatching and cancel every request still in flight."""
        self._running = False
        self._fail_pending(ConnectionLostError("JSON-RPC client stopped"))

    async def request(
        self, method: str, params: Optional[dict] = None, timeout: Optional[float] = None
    ) -> Any:
        """
        Send a request and wait for its result.

        Raises:
            JsonRpcError: If the peer answers with an error.
            ConnectionLostError: If the connection closes first.
            asyncio.TimeoutError: If ``timeout`` elapses first.
        """
        if not self._running:
            raise ConnectionLostError(f"Cannot send {method}: connection is not open")

        loop = asyncio.get_running_loop()
        request_id = next(self._ids)
        future = loop.create_future()
        with self._pending_lock:
            self._pending[request_id] = future

        try:
            await self._send(
                {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params or {}}
            )
            if timeout is None:
                return await future
            return await asyncio.wait_for(future, timeout=timeout)
        finally:
            with self._pending_lock:
                self._pending.pop(request_id, None)

    async def notify(self, method: str, params: Optional[dict] = None) -> None:
        await self._send({"jsonrpc": "2.0", "method": method, "params": params or {}})

    async def _send(self, message: dict) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._write_message, message)

    def _write_message(self, message: dict) -> None:
        body = json.dumps(message, separators=(",", ":")).encode("utf-8")
        header = f"Content-Length: {len(body)}\r\n\r\n".encode("ascii")
        with self._write_lock:
            self.process.stdin.write(header + body)
            self.process.stdin.flush()

    def _read_message(self) -> Optional[Any]:
        """Read one framed message; None on end of stream."""
        stream = self.process.stdout
        content_length = None
        while True:
            line = stream.readline()
            if not line:
                return None
            line = line.strip()
            if not line:
                break
            name, _, value = line.decode("ascii").partition(":")
            if name.strip().lower() == "content-length":
                content_length = int(value.strip())

        if content_length is None:
            raise ValueError("Missing Content-Length header")

        body = b""
        while len(body) < content_length:
            chunk = stream.read(content_length - len(body))
            if not chunk:
                return None
            body += chunk
        return json.loads(body.decode("utf-8"))

    def _read_loop(self) -> None:
        error: Exception = ConnectionLostError("Connection to the agent was closed")
        try:
            while self._running:
                message = self._read_message()
                if message is None:
                    break
                self._route(message)
        except Exception as e:
            if self._running:
                logger.exception("JSON-RPC reader stopped")
                error = ConnectionLostError(f"Connection to the agent failed: {e}")

        if self._running and self._loop is not None and not self._loop.is_closed():
            self._running = False
            self._loop.call_soon_threadsafe(self._on_connection_lost, error)

    def _on_connection_lost(self, error: Exception) -> None:
        if self._close_handler is not None:
            try:
                self._close_handler(error)
            except Exception:
                logger.exception("Error in JSON-RPC close handler")
        self._fail_pending(error)

    def _fail_pending(self, error: Exception) -> None:
        with self._pending_lock:
            pending = list(self._pending.values())
            self._pending.clear()
        for future in pending:
            if self._loop is not None and not self._loop.is_closed():
                self._loop.call_soon_threadsafe(_set_exception, future, error)

    def _route(self, message: Any) -> None:
        """Runs on the reader thread; everything it triggers runs on the loop."""
        assert self._loop is not None
        if not isinstance(message, dict):
            logger.warning("Dropping malformed JSON-RPC message: %r", message)
            return
        method = message.get("method")

        if method is None:
            with self._pending_lock:
                future = self._pending.get(message.get("id"))
            if future is None:
                logger.debug("Dropping response for unknown request id %r", message.get("id"))
                return
            if "error" in message:
                err = message["error"] or {}
                exc = JsonRpcError(err.get("code", INTERNAL_ERROR), err.get("message", ""), err.get("data"))
                self._loop.call_soon_threadsafe(_set_exception, future, exc)
            else:
                self._loop.call_soon_threadsafe(_set_result, future, message.get("result"))
        elif "id" in message:
            asyncio.run_coroutine_threadsafe(self._dispatch_request(message), self._loop)
        else:
            self._loop.call_soon_threadsafe(
                self._dispatch_notification, method, message.get("params") or {}
            )

    def _dispatch_notification(self, method: str, params: dict) -> None:
        if self._notification_handler is None:
            return
        try:
            self._notification_handler(method, params)
        except Exception:
            logger.exception("Error handling notification %s", method)

    async def _dispatch_request(self, message: dict) -> None:
        request_id = message["id"]
        method = message["method"]
        handler = self._request_handlers.get(method)

        if handler is None:
            response: dict = {
                "jsonrpc": "2.0",
                "id": request_id,
                "error": {"code": METHOD_NOT_FOUND, "message": f"Method not found: {method}"},
            }
        else:
            try:
                result = handler(message.get("params") or {})
                if inspect.isawaitable(result):
                    result = await result
                response = {"jsonrpc": "2.0", "id": request_id, "result": result}
            except JsonRpcError as e:
                response = {
                    "jsonrpc": "2.0",
                    "id": request_id,
                    "error": {"code": e.code, "message": e.message, "data": e.data},
                }
            except Exception as e:
                logger.exception("Error handling request %s", method)
                response = {
                    "jsonrpc": "2.0",
                    "id": request_id,
                    "error": {"code": INTERNAL_ERROR, "message": str(e)},
                }

        if not self._running:
            return
        try:
            try:
                await self._send(response)
            except (TypeError, ValueError) as e:
                logger.exception("Result of %s is not JSON serializable", method)
                await self._send(
                    {
                        "jsonrpc": "2.0",
                        "id": request_id,
                        "error": {"code": INTERNAL_ERROR, "message": f"Unserializable result: {e}"},
                    }
                )
        except OSError as e:
            logger.warning("Failed to answer %s: %s", method, e)


def _set_result(future: asyncio.Future, result: Any) -> None:
    if not future.done():
        future.set_result(result)


def _set_exception(future: asyncio.Future, exc: Exception) -> None:
    if not future.done():
        future.set_exception(exc)
