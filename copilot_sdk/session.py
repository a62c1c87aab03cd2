"""
Copilot Session - a single conversation with the agent.

Sessions are created by :meth:`CopilotClient.create_session` or
:meth:`CopilotClient.resume_session`; this module holds the per-session
state: event subscribers, the tool registry and the permission, user-input
and hook handlers the agent calls back into.
"""

import asyncio
import inspect
import logging
import threading
from collections.abc import AsyncIterator
from typing import Any, Callable, Optional, Union, cast

from .events import SessionEvent, SessionEventType, session_event_from_dict
from .tools import ToolRegistry
from .types import (
    DENIED_NO_APPROVAL,
    MessageOptions,
    PermissionHandler,
    PermissionRequestResult,
    SessionEventHandler,
    SessionHooks,
    Tool,
    ToolInvocation,
    ToolResult,
    UserInputHandler,
    UserInputRequest,
    UserInputResponse,
)

logger = logging.getLogger(__name__)

DEFAULT_SEND_TIMEOUT = 60.0

_HOOK_HANDLERS = {
    "preToolUse": "on_pre_tool_use",
    "postToolUse": "on_post_tool_use",
    "userPromptSubmitted": "on_user_prompt_submitted",
    "sessionStart": "on_session_start",
    "sessionEnd": "on_session_end",
    "errorOccurred": "on_error_occurred",
}


class SessionError(RuntimeError):
    """The agent reported a ``session.error`` event for the current turn."""

    def __init__(self, event: SessionEvent):
        message = event.data.message or "unknown error"
        super().__init__(f"Session error: {message}")
        self.event = event


class CopilotSession:
    """
    A single conversation with the agent.

    Attributes:
        session_id: The unique identifier for this session.

    Example:
        >>> async with await client.create_session({"streaming": True}) as session:
        ...     session.on(
        ...         "assistant.message_delta",
        ...         lambda event: print(event.data.delta_content, end=""),
        ...     )
        ...     await session.send_and_wait({"prompt": "Hello!"})
    """

    def __init__(
        self,
        session_id: str,
        client: Any,
        workspace_path: Optional[str] = None,
        on_destroyed: Optional[Callable[[str], None]] = None,
    ):
        """
        Note:
            Internal; use :meth:`CopilotClient.create_session`.

        Args:
            session_id: The unique identifier for this session.
            client: The JSON-RPC connection to the agent.
            workspace_path: Workspace directory when infinite sessions are enabled.
            on_destroyed: Called with the session id once the session is destroyed.
        """
        self.session_id = session_id
        self._client = client
        self._workspace_path = workspace_path
        self._on_destroyed = on_destroyed
        self._handlers: list[SessionEventHandler] = []
        self._typed_handlers: dict[SessionEventType, list[SessionEventHandler]] = {}
        self._handlers_lock = threading.Lock()
        self._tools = ToolRegistry()
        self._permission_handler: Optional[PermissionHandler] = None
        self._user_input_handler: Optional[UserInputHandler] = None
        self._hooks: Optional[SessionHooks] = None
        # Replayed by the client to reattach after the agent restarts
        self._resume_payload: dict[str, Any] = {"sessionId": session_id}

    @property
    def workspace_path(self) -> Optional[str]:
        """
        Workspace directory (checkpoints/, plan.md, files/) when infinite
        sessions are enabled, else None.
        """
        return self._workspace_path

    @property
    def tools(self) -> ToolRegistry:
        return self._tools

    async def __aenter__(self) -> "CopilotSession":
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.destroy()

    async def send(self, options: MessageOptions) -> str:
        """
        Send a message and return as soon as the agent has accepted it.

        Responses arrive as events; subscribe with :meth:`on`, or use
        :meth:`send_and_wait` / :meth:`stream`.

        Args:
            options: Must contain "prompt"; may contain "attachments" and "mode".

        Returns:
            The message ID, usable to correlate events.
        """
        params: dict[str, Any] = {"sessionId": self.session_id, "prompt": options["prompt"]}
        if options.get("attachments"):
            params["attachments"] = options["attachments"]
        if options.get("mode"):
            params["mode"] = options["mode"]

        response = await self._client.request("session.send", params)
        return response["messageId"]

    async def send_and_wait(
        self, options: MessageOptions, timeout: Optional[float] = None
    ) -> Optional[SessionEvent]:
        """
        Send a message and wait until the session goes idle.

        Handlers registered with :meth:`on` still see every event.

        Args:
            options: The message to send.
            timeout: Seconds to wait (default 60). Expiry does not abort the
                agent; call :meth:`abort` for that.

        Returns:
            The last ``assistant.message`` event of the turn, or None.

        Raises:
            SessionError: If the agent reports a ``session.error``.
            asyncio.TimeoutError: If the session is not idle in time.
        """
        effective_timeout = timeout if timeout is not None else DEFAULT_SEND_TIMEOUT
        done = asyncio.Event()
        last_message: Optional[SessionEvent] = None
        failure: Optional[SessionError] = None

        def handler(event: SessionEvent) -> None:
            nonlocal last_message, failure
            if event.type == SessionEventType.ASSISTANT_MESSAGE:
                last_message = event
            elif event.type == SessionEventType.SESSION_IDLE:
                done.set()
            elif event.type == SessionEventType.SESSION_ERROR:
                failure = SessionError(event)
                done.set()

        unsubscribe = self.on(handler)
        try:
            await self.send(options)
            try:
                await asyncio.wait_for(done.wait(), timeout=effective_timeout)
            except asyncio.TimeoutError:
                raise asyncio.TimeoutError(
                    f"Timeout after {effective_timeout}s waiting for session.idle"
                ) from None
            if failure is not None:
                raise failure
            return last_message
        finally:
            unsubscribe()

    async def stream(
        self, options: MessageOptions, timeout: Optional[float] = None
    ) -> AsyncIterator[SessionEvent]:
        """
        Send a message and iterate over the events of the resulting turn.

        Iteration ends after ``session.idle`` has been yielded.

        Args:
            options: The message to send.
            timeout: Max seconds to wait for each next event; None waits forever.

        Raises:
            SessionError: After yielding a ``session.error`` event.
            asyncio.TimeoutError: If no event arrives within ``timeout``.

        Example:
            >>> async for event in session.stream({"prompt": "Tell me a story"}):
            ...     if event.type == SessionEventType.ASSISTANT_MESSAGE_DELTA:
            ...         print(event.data.delta_content, end="")
        """
        queue: asyncio.Queue[SessionEvent] = asyncio.Queue()
        unsubscribe = self.on(queue.put_nowait)
        try:
            await self.send(options)
            while True:
                event = await asyncio.wait_for(queue.get(), timeout=timeout)
                yield event
                if event.type == SessionEventType.SESSION_ERROR:
                    raise SessionError(event)
                if event.type == SessionEventType.SESSION_IDLE:
                    return
        finally:
            unsubscribe()

    def on(
        self,
        event_type_or_handler: Union[str, SessionEventType, SessionEventHandler],
        handler: Optional[SessionEventHandler] = None,
    ) -> Callable[[], None]:
        """
        Subscribe to this session's events.

        Call as ``on(handler)`` for every event, or ``on(event_type, handler)``
        for one type, given as a :class:`SessionEventType` or its string value.
        Handlers run on the event loop in the order events were emitted;
        exceptions they raise are logged and do not affect other handlers.

        Returns:
            A function that removes the subscription.

        Example:
            >>> unsubscribe = session.on("session.idle", lambda e: print("done"))
            >>> unsubscribe()
        """
        if handler is None and callable(event_type_or_handler):
            callback = cast(SessionEventHandler, event_type_or_handler)
            with self._handlers_lock:
                self._handlers.append(callback)

            def unsubscribe_all() -> None:
                with self._handlers_lock:
                    if callback in self._handlers:
                        self._handlers.remove(callback)

            return unsubscribe_all

        if handler is not None and isinstance(event_type_or_handler, (str, SessionEventType)):
            event_type = SessionEventType(event_type_or_handler)
            typed = handler
            with self._handlers_lock:
                self._typed_handlers.setdefault(event_type, []).append(typed)

            def unsubscribe_typed() -> None:
                with self._handlers_lock:
                    handlers = self._typed_handlers.get(event_type, [])
                    if typed in handlers:
                        handlers.remove(typed)

            return unsubscribe_typed

        raise ValueError("Invalid arguments: use on(handler) or on(event_type, handler)")

    def _dispatch_event(self, event: SessionEvent) -> None:
        """Deliver an event to typed subscribers, then to catch-all subscribers."""
        with self._handlers_lock:
            handlers = list(self._typed_handlers.get(event.type, [])) + list(self._handlers)

        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Error in event handler for %s on session %s",
                    event.raw_type or event.type.value,
                    self.session_id,
                )

    def _register_tools(self, tools: Optional[list[Tool]]) -> None:
        self._tools.register(tools)

    async def _handle_tool_call(self, tool_call_id: str, tool_name: str, arguments: Any) -> ToolResult:
        invocation: ToolInvocation = {
            "session_id": self.session_id,
            "tool_call_id": tool_call_id,
            "tool_name": tool_name,
            "arguments": arguments,
        }
        return await self._tools.invoke(invocation)

    def _register_permission_handler(self, handler: Optional[PermissionHandler]) -> None:
        self._permission_handler = handler

    async def _handle_permission_request(self, request: dict) -> PermissionRequestResult:
        """Ask the registered handler; deny when there is none or it fails."""
        handler = self._permission_handler
        if handler is None:
            return {"kind": DENIED_NO_APPROVAL}

        try:
            result = handler(cast(Any, request), {"session_id": self.session_id})
            if inspect.isawaitable(result):
                result = await result
            return result
        except Exception:
            logger.exception("Permission handler failed on session %s", self.session_id)
            return {"kind": DENIED_NO_APPROVAL}

    def _register_user_input_handler(self, handler: Optional[UserInputHandler]) -> None:
        self._user_input_handler = handler

    async def _handle_user_input_request(self, request: dict) -> UserInputResponse:
        handler = self._user_input_handler
        if handler is None:
            raise RuntimeError("User input requested but no handler registered")

        result = handler(
            UserInputRequest(
                question=request.get("question", ""),
                choices=request.get("choices") or [],
                allowFreeform=request.get("allowFreeform", True),
            ),
            {"session_id": self.session_id},
        )
        if inspect.isawaitable(result):
            result = await result
        return result

    def _register_hooks(self, hooks: Optional[SessionHooks]) -> None:
        self._hooks = hooks

    async def _handle_hooks_invoke(self, hook_type: str, input_data: Any) -> Any:
        """Run the hook for ``hook_type``; None when absent or when it raises."""
        hooks = self._hooks
        if not hooks:
            return None

        key = _HOOK_HANDLERS.get(hook_type)
        handler = hooks.get(key) if key else None  # type: ignore[misc]
        if handler is None:
            return None

        try:
            result = handler(input_data, {"session_id": self.session_id})
            if inspect.isawaitable(result):
                result = await result
            return result
        except Exception:
            logger.exception("Hook %s failed on session %s", hook_type, self.session_id)
            return None

    def _rebind(self, client: Any) -> None:
        """Point the session at a new connection after the agent restarted."""
        self._client = client

    async def get_messages(self) -> list[SessionEvent]:
        """
        Return the persisted history of this session, oldest first.

        Ephemeral events such as message deltas are not persisted.
        """
        response = await self._client.request("session.getMessages", {"sessionId": self.session_id})
        return [session_event_from_dict(event) for event in response["events"]]

    async def destroy(self) -> None:
        """
        Release this session on the agent and drop every local handler.

        The conversation can be continued later with
        :meth:`CopilotClient.resume_session`.
        """
        try:
            await self._client.request("session.destroy", {"sessionId": self.session_id})
        finally:
            with self._handlers_lock:
                self._handlers.clear()
                self._typed_handlers.clear()
            self._tools.clear()
            self._permission_handler = None
            self._user_input_handler = None
            self._hooks = None
            if self._on_destroyed is not None:
                self._on_destroyed(self.session_id)

    async def abort(self) -> None:
        """Cancel the turn in progress; the session remains usable."""
        await self._client.request("session.abort", {"sessionId": self.session_id})
