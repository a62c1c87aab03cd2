"""
Copilot Client - main entry point for the session SDK.

:class:`CopilotClient` owns the connection to the agent CLI (spawned over
stdio or TCP, or an existing server reached through ``cli_url``), creates and
tracks sessions, and routes the agent's inbound notifications and requests
to the session they belong to.

Example:
    >>> from copilot_sdk import CopilotClient
    >>>
    >>> async with CopilotClient() as client:
    ...     session = await client.create_session({"model": "gpt-5"})
    ...     reply = await session.send_and_wait({"prompt": "Hello!"})
"""

import asyncio
import logging
import os
import threading
from typing import Any, Callable, Optional, Union, cast

from .events import SessionEvent, session_event_from_dict
from .jsonrpc import JsonRpcClient
from .protocol import get_sdk_protocol_version
from .session import CopilotSession
from .tools import ToolRegistry
from .transport import CliProcess, connect_tcp, parse_cli_url, resolve_cli_path
from .types import (
    ConnectionState,
    CopilotClientOptions,
    CustomAgentConfig,
    GetAuthStatusResponse,
    GetStatusResponse,
    ModelInfo,
    PingResponse,
    ProviderConfig,
    ResumeSessionConfig,
    SessionConfig,
    SessionLifecycleEvent,
    SessionLifecycleEventType,
    SessionLifecycleHandler,
    SessionMetadata,
    StopError,
)

logger = logging.getLogger(__name__)

# Session config keys copied to the wire unchanged apart from the key name
_SESSION_KEYS = [
    ("model", "model"),
    ("reasoning_effort", "reasoningEffort"),
    ("system_message", "systemMessage"),
    ("available_tools", "availableTools"),
    ("excluded_tools", "excludedTools"),
    ("working_directory", "workingDirectory"),
    ("mcp_servers", "mcpServers"),
    ("config_dir", "configDir"),
    ("skill_directories", "skillDirectories"),
    ("disabled_skills", "disabledSkills"),
]

_PROVIDER_KEYS = {
    "type": "type",
    "base_url": "baseUrl",
    "api_key": "apiKey",
    "wire_api": "wireApi",
    "bearer_token": "bearerToken",
}

_CUSTOM_AGENT_KEYS = {
    "name": "name",
    "display_name": "displayName",
    "description": "description",
    "tools": "tools",
    "prompt": "prompt",
    "mcp_servers": "mcpServers",
    "infer": "infer",
}

_INFINITE_SESSION_KEYS = {
    "enabled": "enabled",
    "background_compaction_threshold": "backgroundCompactionThreshold",
    "buffer_exhaustion_threshold": "bufferExhaustionThreshold",
}


def _rename_keys(config: Any, mapping: dict[str, str]) -> dict[str, Any]:
    return {mapping[key]: value for key, value in config.items() if key in mapping}


def provider_to_wire(provider: Union[ProviderConfig, dict[str, Any]]) -> dict[str, Any]:
    wire = _rename_keys(provider, _PROVIDER_KEYS)
    azure = provider.get("azure")
    if azure and "api_version" in azure:
        wire["azure"] = {"apiVersion": azure["api_version"]}
    return wire


def custom_agent_to_wire(agent: Union[CustomAgentConfig, dict[str, Any]]) -> dict[str, Any]:
    return _rename_keys(agent, _CUSTOM_AGENT_KEYS)


def build_session_payload(
    config: Union[SessionConfig, ResumeSessionConfig],
    tool_definitions: list[dict[str, Any]],
    resume_session_id: Optional[str] = None,
) -> dict[str, Any]:
    """
    Translate a session config into ``session.create`` / ``session.resume`` params.

    Handlers stay local; only the flags announcing them are sent.
    """
    cfg = cast(dict, config)
    payload: dict[str, Any] = {}

    if resume_session_id is not None:
        payload["sessionId"] = resume_session_id
    elif cfg.get("session_id"):
        payload["sessionId"] = cfg["session_id"]

    for key, wire_key in _SESSION_KEYS:
        if cfg.get(key):
            payload[wire_key] = cfg[key]

    if tool_definitions:
        payload["tools"] = tool_definitions
    if cfg.get("streaming") is not None:
        payload["streaming"] = cfg["streaming"]
    if cfg.get("on_permission_request"):
        payload["requestPermission"] = True
    if cfg.get("on_user_input_request"):
        payload["requestUserInput"] = True
    hooks = cfg.get("hooks")
    if hooks and any(hooks.values()):
        payload["hooks"] = True

    if cfg.get("provider"):
        payload["provider"] = provider_to_wire(cfg["provider"])
    if cfg.get("custom_agents"):
        payload["customAgents"] = [custom_agent_to_wire(agent) for agent in cfg["custom_agents"]]
    if cfg.get("infinite_sessions"):
        payload["infiniteSessions"] = _rename_keys(cfg["infinite_sessions"], _INFINITE_SESSION_KEYS)

    if resume_session_id is not None and cfg.get("disable_resume"):
        payload["disableResume"] = True
    return payload


class CopilotClient:
    """
    Client for the agent CLI.

    By default the client spawns the CLI and talks JSON-RPC over its stdio.
    Set ``use_stdio`` to False to have the spawned CLI listen on TCP
    instead, or pass ``cli_url`` to connect to a server someone else runs.

    Attributes:
        options: The effective configuration, defaults filled in.

    Example:
        >>> client = CopilotClient({"log_level": "debug"})
        >>> await client.start()
        >>> session = await client.create_session({"streaming": True})
        >>> session.on(lambda event: print(event.type))
        >>> await session.send({"prompt": "Hello!"})
        >>> await session.destroy()
        >>> await client.stop()

        >>> # Or connect to an existing server
        >>> client = CopilotClient({"cli_url": "localhost:3000"})
    """

    def __init__(self, options: Optional[CopilotClientOptions] = None):
        """
        Raises:
            ValueError: If mutually exclusive options are combined or
                ``cli_url`` is malformed.
            RuntimeError: If no CLI executable can be found.
        """
        opts = options or {}
        cli_url = opts.get("cli_url")

        if cli_url and (opts.get("use_stdio") or opts.get("cli_path")):
            raise ValueError("cli_url is mutually exclusive with use_stdio and cli_path")
        if cli_url and (opts.get("github_token") or opts.get("use_logged_in_user") is not None):
            raise ValueError(
                "github_token and use_logged_in_user cannot be used with cli_url "
                "(external server manages its own auth)"
            )

        self._actual_host = "localhost"
        self._actual_port: Optional[int] = None
        self._is_external_server = bool(cli_url)
        if cli_url:
            self._actual_host, self._actual_port = parse_cli_url(cli_url)

        github_token = opts.get("github_token")
        use_logged_in_user = opts.get("use_logged_in_user")
        if use_logged_in_user is None:
            use_logged_in_user = not github_token

        self.options: CopilotClientOptions = {
            "cli_path": "" if cli_url else resolve_cli_path(opts.get("cli_path")),
            "cwd": opts.get("cwd") or os.getcwd(),
            "port": opts.get("port", 0),
            "use_stdio": False if cli_url else opts.get("use_stdio", True),
            "log_level": opts.get("log_level", "info"),
            "auto_start": opts.get("auto_start", True),
            "auto_restart": opts.get("auto_restart", True),
            "use_logged_in_user": use_logged_in_user,
        }
        if cli_url:
            self.options["cli_url"] = cli_url
        if opts.get("env"):
            self.options["env"] = opts["env"]
        if github_token:
            self.options["github_token"] = github_token

        self._process: Optional[CliProcess] = None
        self._connection: Any = None
        self._client: Optional[JsonRpcClient] = None
        self._state: ConnectionState = "disconnected"
        self._restart_task: Optional[asyncio.Task] = None
        self._stopping = False
        self._sessions: dict[str, CopilotSession] = {}
        self._sessions_lock = threading.Lock()
        # Events that arrive while session.create/resume is in flight, by session id
        self._early_events: dict[str, list[SessionEvent]] = {}
        self._opening_sessions = 0
        self._models_cache: Optional[list[ModelInfo]] = None
        self._models_cache_lock = asyncio.Lock()
        # None holds the wildcard subscribers
        self._lifecycle_handlers: dict[Optional[str], list[SessionLifecycleHandler]] = {}
        self._lifecycle_handlers_lock = threading.Lock()

    async def __aenter__(self) -> "CopilotClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.stop()

    async def start(self) -> None:
        """
        Spawn the CLI (unless using ``cli_url``), connect, and check that the
        agent speaks this SDK's protocol version.

        Raises:
            RuntimeError: If the CLI cannot be started or reached, or the
                protocol versions differ.
        """
        if self._state == "connected":
            return

        self._state = "connecting"
        try:
            await self._close_connection(force=True)
            await self._open_connection()
            self._state = "connected"
        except Exception:
            await self._close_connection(force=True)
            self._state = "error"
            raise

    async def stop(self) -> list[StopError]:
        """
        Destroy every session, close the connection and stop the CLI process
        if this client spawned it.

        Returns:
            Problems encountered while cleaning up; empty when all went well.
        """
        self._stopping = True
        try:
            await self._cancel_restart()
            errors: list[StopError] = []

            with self._sessions_lock:
                sessions = list(self._sessions.values())
                self._sessions.clear()

            for session in sessions:
                try:
                    await session.destroy()
                except Exception as e:
                    errors.append(
                        StopError(message=f"Failed to destroy session {session.session_id}: {e}")
                    )

            try:
                await self._close_connection(force=False)
            except Exception as e:
                errors.append(StopError(message=f"Failed to stop CLI: {e}"))
        finally:
            self._stopping = False
            self._state = "disconnected"
        return errors

    async def force_stop(self) -> None:
        """
        Drop all sessions without telling the agent and kill the CLI.

        Use when :meth:`stop` fails or hangs.
        """
        self._stopping = True
        try:
            await self._cancel_restart()
            with self._sessions_lock:
                self._sessions.clear()
            await self._close_connection(force=True)
        except Exception:
            logger.exception("Error while force-stopping the Copilot CLI")
        finally:
            self._stopping = False
            self._state = "disconnected"

    async def create_session(self, config: Optional[SessionConfig] = None) -> CopilotSession:
        """
        Start a new conversation.

        Starts the client first when it is not connected and ``auto_start``
        is on.

        Args:
            config: Model, tools, system message, MCP servers and so on.

        Raises:
            RuntimeError: If the client is not connected and auto_start is off.
            ValueError: If two tools share a name.

        Example:
            >>> session = await client.create_session({
            ...     "model": "gpt-5",
            ...     "streaming": True,
            ...     "mcp_servers": {
            ...         "github": {"type": "http", "url": "https://api.githubcopilot.com/mcp/",
            ...                    "tools": ["*"]},
            ...     },
            ... })
        """
        return await self._open_session("session.create", config or {}, None)

    async def resume_session(
        self, session_id: str, config: Optional[ResumeSessionConfig] = None
    ) -> CopilotSession:
        """
        Continue an existing conversation, with its history, by ID.

        Tools and handlers are not persisted by the agent; pass them again.

        Raises:
            JsonRpcError: If the agent does not know the session.
            RuntimeError: If the client is not connected and auto_start is off.
        """
        return await self._open_session("session.resume", config or {}, session_id)

    async def _open_session(
        self,
        method: str,
        cfg: Union[SessionConfig, ResumeSessionConfig],
        resume_session_id: Optional[str],
    ) -> CopilotSession:
        await self._ensure_connected()

        tools = cfg.get("tools")
        # validates names before anything is sent
        definitions = ToolRegistry(tools).definitions()
        payload = build_session_payload(cfg, definitions, resume_session_id)

        self._opening_sessions += 1
        try:
            response = await self._rpc().request(method, payload)
            session_id = response["sessionId"]

            session = CopilotSession(
                session_id,
                self._client,
                response.get("workspacePath"),
                on_destroyed=self._forget_session,
            )
            session._register_tools(tools)
            session._register_permission_handler(cfg.get("on_permission_request"))
            session._register_user_input_handler(cfg.get("on_user_input_request"))
            session._register_hooks(cfg.get("hooks"))
            session._resume_payload = {**payload, "sessionId": session_id, "disableResume": True}

            with self._sessions_lock:
                self._sessions[session_id] = session
            # Replayed after the caller has had a chance to subscribe
            self._early_events.setdefault(session_id, [])
            asyncio.get_running_loop().call_soon(self._replay_early_events, session)
            return session
        finally:
            self._opening_sessions -= 1
            if not self._opening_sessions:
                for orphan in [sid for sid in self._early_events if self._get_session(sid) is None]:
                    del self._early_events[orphan]

    def _replay_early_events(self, session: CopilotSession) -> None:
        for event in self._early_events.pop(session.session_id, []):
            session._dispatch_event(event)

    def _forget_session(self, session_id: str) -> None:
        with self._sessions_lock:
            self._sessions.pop(session_id, None)

    def get_state(self) -> ConnectionState:
        """One of "disconnected", "connecting", "connected" or "error"."""
        return self._state

    async def ping(self, message: Optional[str] = None) -> PingResponse:
        """
        Round-trip a message through the agent.

        Raises:
            RuntimeError: If the client is not connected.
        """
        result = await self._rpc().request("ping", {"message": message})
        return PingResponse.from_dict(result)

    async def get_status(self) -> GetStatusResponse:
        """CLI version and protocol version."""
        result = await self._rpc().request("status.get", {})
        return GetStatusResponse.from_dict(result)

    async def get_auth_status(self) -> GetAuthStatusResponse:
        """Whether the agent is authenticated, and as whom."""
        result = await self._rpc().request("auth.getStatus", {})
        return GetAuthStatusResponse.from_dict(result)

    async def list_models(self) -> list[ModelInfo]:
        """
        Models available to this user.

        The first successful result is cached until the client disconnects;
        callers get a copy of the cached list.
        """
        rpc = self._rpc()
        async with self._models_cache_lock:
            if self._models_cache is None:
                response = await rpc.request("models.list", {})
                self._models_cache = [ModelInfo.from_dict(m) for m in response.get("models", [])]
            return list(self._models_cache)

    async def list_sessions(self) -> list[SessionMetadata]:
        """Metadata for every session the agent has persisted."""
        response = await self._rpc().request("session.list", {})
        return [SessionMetadata.from_dict(s) for s in response.get("sessions", [])]

    async def delete_session(self, session_id: str) -> None:
        """
        Permanently delete a session and its history; it can no longer be resumed.

        Raises:
            RuntimeError: If the agent reports the deletion failed.
        """
        response = await self._rpc().request("session.delete", {"sessionId": session_id})
        if not response.get("success", False):
            error = response.get("error", "Unknown error")
            raise RuntimeError(f"Failed to delete session {session_id}: {error}")
        self._forget_session(session_id)

    def on(
        self,
        event_type_or_handler: Union[SessionLifecycleEventType, SessionLifecycleHandler],
        handler: Optional[SessionLifecycleHandler] = None,
    ) -> Callable[[], None]:
        """
        Subscribe to session lifecycle events (created, deleted, updated, ...).

        Call as ``on(handler)`` for every event or ``on(event_type, handler)``
        for one type.

        Returns:
            A function that removes the subscription.

        Example:
            >>> unsubscribe = client.on("session.created", lambda e: print(e.sessionId))
        """
        if handler is None and callable(event_type_or_handler):
            key: Optional[str] = None
            callback = cast(SessionLifecycleHandler, event_type_or_handler)
        elif handler is not None and isinstance(event_type_or_handler, str):
            key = event_type_or_handler
            callback = handler
        else:
            raise ValueError("Invalid arguments: use on(handler) or on(event_type, handler)")

        with self._lifecycle_handlers_lock:
            self._lifecycle_handlers.setdefault(key, []).append(callback)

        def unsubscribe() -> None:
            with self._lifecycle_handlers_lock:
                handlers = self._lifecycle_handlers.get(key, [])
                if callback in handlers:
                    handlers.remove(callback)

        return unsubscribe

    def _dispatch_lifecycle_event(self, event: SessionLifecycleEvent) -> None:
        with self._lifecycle_handlers_lock:
            handlers = list(self._lifecycle_handlers.get(event.type, []))
            handlers += self._lifecycle_handlers.get(None, [])

        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("Error in lifecycle handler for %s", event.type)

    def _rpc(self) -> JsonRpcClient:
        if self._client is None:
            raise RuntimeError("Client not connected")
        return self._client

    async def _ensure_connected(self) -> None:
        if self._restart_task is not None and not self._restart_task.done():
            await asyncio.shield(self._restart_task)
        if self._state == "connected" and self._client is not None:
            return
        if not self.options["auto_start"]:
            raise RuntimeError("Client not connected. Call start() first.")
        await self.start()

    async def _verify_protocol_version(self) -> None:
        expected = get_sdk_protocol_version()
        result = await self._rpc().request("ping", {"message": None})
        server_version = result.get("protocolVersion")

        if server_version is None:
            raise RuntimeError(
                f"SDK protocol version mismatch: SDK expects version {expected}, "
                "but server does not report a protocol version. "
                "Please update your server to ensure compatibility."
            )
        if server_version != expected:
            raise RuntimeError(
                f"SDK protocol version mismatch: SDK expects version {expected}, "
                f"but server reports version {server_version}. "
                "Please update your SDK or server to ensure compatibility."
            )

    async def _open_connection(self) -> None:
        if self._is_external_server:
            assert self._actual_port is not None
            self._connection = await connect_tcp(self._actual_host, self._actual_port)
        else:
            self._process = CliProcess(self.options)
            if self.options["use_stdio"]:
                self._connection = self._process
            else:
                self._actual_port = await self._process.wait_for_port()
                self._connection = await connect_tcp(self._actual_host, self._actual_port)

        rpc = JsonRpcClient(self._connection)
        rpc.set_notification_handler(self._handle_notification)
        rpc.set_request_handler("tool.call", self._handle_tool_call_request)
        rpc.set_request_handler("permission.request", self._handle_permission_request)
        rpc.set_request_handler("userInput.request", self._handle_user_input_request)
        rpc.set_request_handler("hooks.invoke", self._handle_hooks_invoke)
        rpc.set_close_handler(lambda error: self._on_connection_lost(rpc, error))
        rpc.start(asyncio.get_running_loop())
        self._client = rpc

        await self._verify_protocol_version()

    async def _close_connection(self, force: bool) -> None:
        """Tear down the RPC channel, the socket and the spawned process, in that order."""
        rpc, self._client = self._client, None
        if rpc is not None:
            await rpc.stop()

        connection, self._connection = self._connection, None
        process, self._process = self._process, None
        loop = asyncio.get_running_loop()
        if connection is not None and connection is not process:
            connection.terminate()
        if process is not None:
            await loop.run_in_executor(None, process.kill if force else process.terminate)

        async with self._models_cache_lock:
            self._models_cache = None
        if not self._is_external_server:
            self._actual_port = None

    async def _cancel_restart(self) -> None:
        task, self._restart_task = self._restart_task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait([task])

    def _on_connection_lost(self, rpc: JsonRpcClient, error: Exception) -> None:
        if self._stopping or rpc is not self._client:
            return
        logger.warning("Lost connection to the Copilot CLI: %s", error)
        self._state = "error"
        if self.options["auto_restart"]:
            self._restart_task = asyncio.get_running_loop().create_task(self._restart())

    async def _restart(self) -> None:
        """Bring the agent back and reattach every tracked session."""
        with self._sessions_lock:
            sessions = list(self._sessions.values())
        logger.warning("Restarting the Copilot CLI and resuming %d session(s)", len(sessions))

        self._state = "connecting"
        try:
            await self._close_connection(force=True)
            await self._open_connection()
        except Exception:
            logger.exception("Failed to restart the Copilot CLI")
            await self._close_connection(force=True)
            self._state = "error"
            return

        rpc = self._rpc()
        for session in sessions:
            try:
                await rpc.request("session.resume", session._resume_payload)
            except Exception as e:
                logger.warning("Dropping session %s after restart: %s", session.session_id, e)
                self._forget_session(session.session_id)
                continue
            session._rebind(rpc)
        self._state = "connected"

    def _get_session(self, session_id: Any) -> Optional[CopilotSession]:
        with self._sessions_lock:
            return self._sessions.get(session_id)

    def _session_for(self, params: dict) -> CopilotSession:
        session_id = params.get("sessionId")
        session = self._get_session(session_id)
        if session is None:
            raise ValueError(f"unknown session {session_id}")
        return session

    def _handle_notification(self, method: str, params: dict) -> None:
        if method == "session.event":
            session_id = params.get("sessionId")
            event = session_event_from_dict(params["event"])
            buffered = self._early_events.get(session_id)
            if buffered is not None:
                buffered.append(event)
                return
            session = self._get_session(session_id)
            if session is not None:
                session._dispatch_event(event)
            elif self._opening_sessions:
                self._early_events[session_id] = [event]
        elif method == "session.lifecycle":
            self._dispatch_lifecycle_event(SessionLifecycleEvent.from_dict(params))
        else:
            logger.debug("Ignoring notification %s", method)

    async def _handle_tool_call_request(self, params: dict) -> dict:
        tool_call_id = params.get("toolCallId")
        tool_name = params.get("toolName")
        if not params.get("sessionId") or not tool_call_id or not tool_name:
            raise ValueError("invalid tool call payload")

        session = self._session_for(params)
        result = await session._handle_tool_call(tool_call_id, tool_name, params.get("arguments"))
        return {"result": result}

    async def _handle_permission_request(self, params: dict) -> dict:
        permission_request = params.get("permissionRequest")
        if not params.get("sessionId") or not permission_request:
            raise ValueError("invalid permission request payload")

        session = self._session_for(params)
        result = await session._handle_permission_request(permission_request)
        return {"result": result}

    async def _handle_user_input_request(self, params: dict) -> dict:
        if not params.get("sessionId") or not params.get("question"):
            raise ValueError("invalid user input request payload")

        session = self._session_for(params)
        response = await session._handle_user_input_request(params)
        return {"answer": response["answer"], "wasFreeform": response.get("wasFreeform", False)}

    async def _handle_hooks_invoke(self, params: dict) -> dict:
        hook_type = params.get("hookType")
        if not params.get("sessionId") or not hook_type:
            raise ValueError("invalid hooks invoke payload")

        session = self._session_for(params)
        output = await session._handle_hooks_invoke(hook_type, params.get("input"))
        return {"output": output}
