"""
CopilotClient Unit Tests

This file is for unit tests. Where relevant, prefer to add e2e tests in e2e/*.py instead.
"""

import asyncio

import pytest

from copilot_sdk import CopilotClient, JsonRpcError, Tool, define_tool
from copilot_sdk.client import build_session_payload
from copilot_sdk.session import CopilotSession
from copilot_sdk.types import SessionLifecycleEvent
from e2e.testharness import CLI_PATH


class StubRpc:
    """Records requests and answers them from a table of canned results."""

    def __init__(self, responses=None):
        self.responses = responses or {}
        self.calls = []

    async def request(self, method, params=None, timeout=None):
        self.calls.append((method, params))
        response = self.responses.get(method, {})
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(params)
        return response

    async def stop(self):
        pass


def connected_client(rpc, **options) -> CopilotClient:
    client = CopilotClient({"cli_path": CLI_PATH, "log_level": "error", **options})
    client._client = rpc
    client._state = "connected"
    return client


class TestHandleToolCallRequest:
    @pytest.mark.asyncio
    async def test_returns_failure_when_tool_not_registered(self, tmp_path):
        client = CopilotClient({"cli_path": CLI_PATH, "cwd": str(tmp_path)})
        await client.start()

        try:
            session = await client.create_session()

            response = await client._handle_tool_call_request(
                {
                    "sessionId": session.session_id,
                    "toolCallId": "123",
                    "toolName": "missing_tool",
                    "arguments": {},
                }
            )

            assert response["result"]["resultType"] == "failure"
            assert response["result"]["error"] == "tool 'missing_tool' not supported"
        finally:
            await client.force_stop()

    @pytest.mark.asyncio
    async def test_routes_call_to_owning_session(self):
        rpc = StubRpc({"session.create": {"sessionId": "s1"}})
        client = connected_client(rpc)

        @define_tool(description="Says hi")
        def greet(params: dict) -> str:
            return f"hi {params['name']}"

        await client.create_session({"tools": [greet]})
        response = await client._handle_tool_call_request(
            {"sessionId": "s1", "toolCallId": "c1", "toolName": "greet", "arguments": {"name": "Ada"}}
        )

        assert response == {"result": {"textResultForLlm": "hi Ada", "resultType": "success"}}

    @pytest.mark.asyncio
    async def test_rejects_invalid_payloads(self):
        client = connected_client(StubRpc())

        with pytest.raises(ValueError, match="invalid tool call payload"):
            await client._handle_tool_call_request({"sessionId": "s1", "toolName": "x"})
        with pytest.raises(ValueError, match="unknown session"):
            await client._handle_tool_call_request(
                {"sessionId": "nope", "toolCallId": "c1", "toolName": "x"}
            )


class TestInboundRequests:
    @pytest.mark.asyncio
    async def test_permission_request_without_handler_is_denied(self):
        client = connected_client(StubRpc({"session.create": {"sessionId": "s1"}}))
        await client.create_session()

        response = await client._handle_permission_request(
            {"sessionId": "s1", "permissionRequest": {"kind": "shell", "toolCallId": "t1"}}
        )

        assert response == {
            "result": {"kind": "denied-no-approval-rule-and-could-not-request-from-user"}
        }

    @pytest.mark.asyncio
    async def test_user_input_request_without_handler_fails(self):
        client = connected_client(StubRpc({"session.create": {"sessionId": "s1"}}))
        await client.create_session()

        with pytest.raises(RuntimeError, match="no handler registered"):
            await client._handle_user_input_request({"sessionId": "s1", "question": "Why?"})

    @pytest.mark.asyncio
    async def test_hooks_invoke_returns_hook_output(self):
        client = connected_client(StubRpc({"session.create": {"sessionId": "s1"}}))
        seen = []

        def on_session_start(hook_input, invocation):
            seen.append((hook_input, invocation))
            return {"additionalContext": "be brief"}

        await client.create_session({"hooks": {"on_session_start": on_session_start}})
        response = await client._handle_hooks_invoke(
            {"sessionId": "s1", "hookType": "sessionStart", "input": {"source": "new"}}
        )

        assert response == {"output": {"additionalContext": "be brief"}}
        assert seen == [({"source": "new"}, {"session_id": "s1"})]

    @pytest.mark.asyncio
    async def test_unknown_hook_type_returns_none(self):
        client = connected_client(StubRpc({"session.create": {"sessionId": "s1"}}))
        await client.create_session({"hooks": {"on_session_end": lambda i, inv: {}}})

        response = await client._handle_hooks_invoke(
            {"sessionId": "s1", "hookType": "somethingNew", "input": {}}
        )
        assert response == {"output": None}


class TestNotificationRouting:
    @pytest.mark.asyncio
    async def test_session_events_reach_owning_session_only(self):
        client = connected_client(StubRpc({"session.create": lambda p: {"sessionId": p["sessionId"]}}))
        first = await client.create_session({"session_id": "a"})
        second = await client.create_session({"session_id": "b"})
        received_a, received_b = [], []
        first.on(received_a.append)
        second.on(received_b.append)
        await asyncio.sleep(0)

        client._handle_notification(
            "session.event",
            {
                "sessionId": "a",
                "event": {
                    "id": "e1",
                    "timestamp": "2025-01-01T00:00:00Z",
                    "type": "assistant.message",
                    "data": {"content": "hello"},
                },
            },
        )
        # Events for sessions this client does not own are dropped
        client._handle_notification(
            "session.event",
            {"sessionId": "zzz", "event": {"id": "e2", "type": "session.idle", "data": {}}},
        )

        assert [e.data.content for e in received_a] == ["hello"]
        assert received_b == []

    @pytest.mark.asyncio
    async def test_events_racing_the_create_response_are_replayed_in_order(self):
        rpc = StubRpc()
        client = connected_client(rpc)

        def idle_event(event_id):
            return {"id": event_id, "timestamp": "2025-01-01T00:00:00Z", "type": "session.idle", "data": {}}

        def create(params):
            # The agent emits before the response has been processed
            client._handle_notification("session.event", {"sessionId": "s1", "event": idle_event("e1")})
            client._handle_notification("session.event", {"sessionId": "other", "event": idle_event("x")})
            return {"sessionId": "s1"}

        rpc.responses["session.create"] = create
        session = await client.create_session()
        received = []
        session.on(received.append)
        client._handle_notification("session.event", {"sessionId": "s1", "event": idle_event("e2")})
        assert received == []

        await asyncio.sleep(0)
        assert [e.id for e in received] == ["e1", "e2"]
        assert client._early_events == {}

        client._handle_notification("session.event", {"sessionId": "s1", "event": idle_event("e3")})
        assert [e.id for e in received] == ["e1", "e2", "e3"]


class TestLifecycleSubscriptions:
    def test_typed_and_wildcard_handlers(self):
        client = CopilotClient({"cli_path": CLI_PATH, "log_level": "error"})
        typed, wildcard = [], []
        client.on("session.deleted", typed.append)
        client.on(wildcard.append)

        client._handle_notification(
            "session.lifecycle",
            {"type": "session.created", "sessionId": "s1", "metadata": {"summary": "x"}},
        )
        client._dispatch_lifecycle_event(SessionLifecycleEvent("session.deleted", "s1"))

        assert [e.type for e in typed] == ["session.deleted"]
        assert [e.type for e in wildcard] == ["session.created", "session.deleted"]
        assert wildcard[0].metadata == {"summary": "x"}

    def test_failing_handler_does_not_block_others(self):
        client = CopilotClient({"cli_path": CLI_PATH, "log_level": "error"})
        received = []

        def broken(event):
            raise RuntimeError("boom")

        client.on(broken)
        client.on(received.append)
        client._dispatch_lifecycle_event(SessionLifecycleEvent("session.updated", "s1"))

        assert len(received) == 1

    def test_unsubscribe(self):
        client = CopilotClient({"cli_path": CLI_PATH, "log_level": "error"})
        received = []
        unsubscribe = client.on("session.created", received.append)
        unsubscribe()
        unsubscribe()

        client._dispatch_lifecycle_event(SessionLifecycleEvent("session.created", "s1"))
        assert received == []

    def test_invalid_arguments(self):
        client = CopilotClient({"cli_path": CLI_PATH, "log_level": "error"})
        with pytest.raises(ValueError, match="Invalid arguments"):
            client.on("session.created")


class TestBuildSessionPayload:
    def test_converts_keys_to_wire_names(self):
        payload = build_session_payload(
            {
                "session_id": "abc",
                "model": "gpt-5",
                "reasoning_effort": "high",
                "system_message": {"mode": "append", "content": "Be brief"},
                "available_tools": ["view"],
                "excluded_tools": ["bash"],
                "working_directory": "/tmp/work",
                "config_dir": "/tmp/config",
                "skill_directories": ["/skills"],
                "disabled_skills": ["legacy"],
                "streaming": False,
                "mcp_servers": {
                    "files": {"type": "local", "command": "mcp-files", "args": [], "tools": ["*"]}
                },
            },
            [],
        )

        assert payload == {
            "sessionId": "abc",
            "model": "gpt-5",
            "reasoningEffort": "high",
            "systemMessage": {"mode": "append", "content": "Be brief"},
            "availableTools": ["view"],
            "excludedTools": ["bash"],
            "workingDirectory": "/tmp/work",
            "configDir": "/tmp/config",
            "skillDirectories": ["/skills"],
            "disabledSkills": ["legacy"],
            "streaming": False,
            "mcpServers": {
                "files": {"type": "local", "command": "mcp-files", "args": [], "tools": ["*"]}
            },
        }

    def test_empty_config_sends_nothing(self):
        assert build_session_payload({}, []) == {}

    def test_handlers_become_flags(self):
        payload = build_session_payload(
            {
                "on_permission_request": lambda r, i: {"kind": "approved"},
                "on_user_input_request": lambda r, i: {"answer": "", "wasFreeform": True},
                "hooks": {"on_pre_tool_use": lambda i, inv: None},
            },
            [{"name": "t", "description": "d"}],
        )

        assert payload == {
            "tools": [{"name": "t", "description": "d"}],
            "requestPermission": True,
            "requestUserInput": True,
            "hooks": True,
        }

    def test_hooks_without_handlers_are_not_announced(self):
        assert "hooks" not in build_session_payload({"hooks": {}}, [])

    def test_provider_custom_agents_and_infinite_sessions(self):
        payload = build_session_payload(
            {
                "provider": {
                    "type": "azure",
                    "base_url": "https://example.openai.azure.com",
                    "api_key": "secret",
                    "wire_api": "responses",
                    "azure": {"api_version": "2024-10-21"},
                },
                "custom_agents": [
                    {
                        "name": "reviewer",
                        "display_name": "Code Reviewer",
                        "prompt": "Review code",
                        "tools": None,
                        "mcp_servers": {"gh": {"type": "http", "url": "https://x", "tools": []}},
                        "infer": False,
                    }
                ],
                "infinite_sessions": {
                    "enabled": True,
                    "background_compaction_threshold": 0.7,
                    "buffer_exhaustion_threshold": 0.9,
                },
            },
            [],
        )

        assert payload["provider"] == {
            "type": "azure",
            "baseUrl": "https://example.openai.azure.com",
            "apiKey": "secret",
            "wireApi": "responses",
            "azure": {"apiVersion": "2024-10-21"},
        }
        assert payload["customAgents"] == [
            {
                "name": "reviewer",
                "displayName": "Code Reviewer",
                "prompt": "Review code",
                "tools": None,
                "mcpServers": {"gh": {"type": "http", "url": "https://x", "tools": []}},
                "infer": False,
            }
        ]
        assert payload["infiniteSessions"] == {
            "enabled": True,
            "backgroundCompactionThreshold": 0.7,
            "bufferExhaustionThreshold": 0.9,
        }

    def test_resume_payload(self):
        payload = build_session_payload(
            {"disable_resume": True, "streaming": True}, [], resume_session_id="s1"
        )
        assert payload == {"sessionId": "s1", "streaming": True, "disableResume": True}

        # disable_resume only applies to resumes
        assert "disableResume" not in build_session_payload({"disable_resume": True}, [])


class TestSessionManagement:
    @pytest.mark.asyncio
    async def test_create_session_sends_tool_definitions(self):
        rpc = StubRpc({"session.create": {"sessionId": "s1", "workspacePath": "/ws/s1"}})
        client = connected_client(rpc)
        tool = Tool(name="lookup", description="Look things up", parameters={"type": "object"})

        session = await client.create_session({"model": "gpt-5", "tools": [tool]})

        assert isinstance(session, CopilotSession)
        assert session.workspace_path == "/ws/s1"
        assert rpc.calls == [
            (
                "session.create",
                {
                    "model": "gpt-5",
                    "tools": [
                        {"name": "lookup", "description": "Look things up", "parameters": {"type": "object"}}
                    ],
                },
            )
        ]
        assert session._resume_payload["sessionId"] == "s1"
        assert session._resume_payload["disableResume"] is True
        assert session._resume_payload["tools"][0]["name"] == "lookup"

    @pytest.mark.asyncio
    async def test_duplicate_tools_are_rejected_before_sending(self):
        rpc = StubRpc()
        client = connected_client(rpc)

        with pytest.raises(ValueError, match="Duplicate tool name: x"):
            await client.create_session(
                {"tools": [Tool(name="x", description="a"), Tool(name="x", description="b")]}
            )
        assert rpc.calls == []

    @pytest.mark.asyncio
    async def test_destroy_forgets_session(self):
        rpc = StubRpc({"session.create": {"sessionId": "s1"}})
        client = connected_client(rpc)
        session = await client.create_session()
        assert "s1" in client._sessions

        await session.destroy()
        assert "s1" not in client._sessions
        assert rpc.calls[-1] == ("session.destroy", {"sessionId": "s1"})

    @pytest.mark.asyncio
    async def test_resume_unknown_session_raises(self):
        rpc = StubRpc({"session.resume": JsonRpcError(-32603, "Session not found: s9")})
        client = connected_client(rpc)

        with pytest.raises(JsonRpcError, match="Session not found"):
            await client.resume_session("s9")
        assert client._sessions == {}

    @pytest.mark.asyncio
    async def test_delete_session_failure(self):
        rpc = StubRpc({"session.delete": {"success": False, "error": "locked"}})
        client = connected_client(rpc)

        with pytest.raises(RuntimeError, match="Failed to delete session s1: locked"):
            await client.delete_session("s1")

    @pytest.mark.asyncio
    async def test_stop_collects_destroy_failures(self):
        rpc = StubRpc(
            {
                "session.create": {"sessionId": "s1"},
                "session.destroy": JsonRpcError(-32603, "gone"),
            }
        )
        client = connected_client(rpc)
        await client.create_session()

        errors = await client.stop()

        assert len(errors) == 1
        assert "Failed to destroy session s1" in errors[0].message
        assert client.get_state() == "disconnected"
        assert client._sessions == {}


class TestModelsCache:
    @pytest.mark.asyncio
    async def test_list_models_is_cached_until_disconnect(self):
        model = {
            "id": "m1",
            "name": "Model One",
            "capabilities": {"supports": {"vision": True}, "limits": {}},
        }
        rpc = StubRpc({"models.list": {"models": [model]}})
        client = connected_client(rpc)

        first = await client.list_models()
        second = await client.list_models()

        assert [m.id for m in first] == ["m1"]
        assert first == second and first is not second
        assert [c[0] for c in rpc.calls] == ["models.list"]

        await client.stop()
        client._client = rpc
        client._state = "connected"
        await client.list_models()
        assert [c[0] for c in rpc.calls] == ["models.list", "models.list"]

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_request(self):
        rpc = StubRpc({"models.list": {"models": []}})
        client = connected_client(rpc)

        await asyncio.gather(*(client.list_models() for _ in range(5)))
        assert len(rpc.calls) == 1

    @pytest.mark.asyncio
    async def test_requires_connection(self):
        client = CopilotClient({"cli_path": CLI_PATH, "log_level": "error"})
        with pytest.raises(RuntimeError, match="Client not connected"):
            await client.list_models()


class TestRestart:
    @pytest.mark.asyncio
    async def test_connection_loss_sets_error_state(self):
        rpc = StubRpc()
        client = connected_client(rpc, auto_restart=False)

        client._on_connection_lost(rpc, ConnectionError("pipe closed"))
        assert client.get_state() == "error"
        assert client._restart_task is None

    @pytest.mark.asyncio
    async def test_loss_of_stale_connection_is_ignored(self):
        client = connected_client(StubRpc())

        client._on_connection_lost(StubRpc(), ConnectionError("old"))
        assert client.get_state() == "connected"

    @pytest.mark.asyncio
    async def test_restart_resumes_tracked_sessions(self):
        old_rpc = StubRpc({"session.create": lambda p: {"sessionId": p["sessionId"]}})
        client = connected_client(old_rpc)
        kept = await client.create_session({"session_id": "kept", "model": "gpt-5"})
        lost = await client.create_session({"session_id": "lost"})

        def resume(params):
            if params["sessionId"] == "lost":
                raise JsonRpcError(-32603, "Session not found: lost")
            return {"sessionId": params["sessionId"]}

        new_rpc = StubRpc({"session.resume": resume})

        async def reopen():
            client._client = new_rpc

        async def close(force):
            client._client = None

        client._open_connection = reopen
        client._close_connection = close

        await client._restart()

        assert client.get_state() == "connected"
        assert new_rpc.calls[0] == (
            "session.resume",
            {"sessionId": "kept", "model": "gpt-5", "disableResume": True},
        )
        assert kept._client is new_rpc
        assert lost._client is old_rpc
        assert list(client._sessions) == ["kept"]


class TestURLParsing:
    def test_parse_port_only_url(self):
        client = CopilotClient({"cli_url": "8080", "log_level": "error"})
        assert client._actual_port == 8080
        assert client._actual_host == "localhost"
        assert client._is_external_server

    def test_parse_host_port_url(self):
        client = CopilotClient({"cli_url": "127.0.0.1:9000", "log_level": "error"})
        assert client._actual_port == 9000
        assert client._actual_host == "127.0.0.1"

    def test_parse_http_url(self):
        client = CopilotClient({"cli_url": "http://localhost:7000", "log_level": "error"})
        assert client._actual_port == 7000
        assert client._actual_host == "localhost"

    def test_parse_https_url(self):
        client = CopilotClient({"cli_url": "https://example.com:443", "log_level": "error"})
        assert client._actual_port == 443
        assert client._actual_host == "example.com"

    def test_invalid_url_format(self):
        with pytest.raises(ValueError, match="Invalid cli_url format"):
            CopilotClient({"cli_url": "invalid-url", "log_level": "error"})

    @pytest.mark.parametrize("url", ["localhost:99999", "localhost:0", "localhost:-1", "host:abc"])
    def test_invalid_port(self, url):
        with pytest.raises(ValueError, match="Invalid port in cli_url"):
            CopilotClient({"cli_url": url, "log_level": "error"})

    def test_cli_url_with_use_stdio(self):
        with pytest.raises(ValueError, match="cli_url is mutually exclusive"):
            CopilotClient({"cli_url": "localhost:8080", "use_stdio": True, "log_level": "error"})

    def test_cli_url_with_cli_path(self):
        with pytest.raises(ValueError, match="cli_url is mutually exclusive"):
            CopilotClient(
                {"cli_url": "localhost:8080", "cli_path": "/path/to/cli", "log_level": "error"}
            )

    def test_use_stdio_false_when_cli_url(self):
        client = CopilotClient({"cli_url": "8080", "log_level": "error"})
        assert not client.options["use_stdio"]


class TestAuthOptions:
    def test_accepts_github_token(self):
        client = CopilotClient(
            {"cli_path": CLI_PATH, "github_token": "gho_test_token", "log_level": "error"}
        )
        assert client.options.get("github_token") == "gho_test_token"

    def test_default_use_logged_in_user_true_without_token(self):
        client = CopilotClient({"cli_path": CLI_PATH, "log_level": "error"})
        assert client.options.get("use_logged_in_user") is True

    def test_default_use_logged_in_user_false_with_token(self):
        client = CopilotClient(
            {"cli_path": CLI_PATH, "github_token": "gho_test_token", "log_level": "error"}
        )
        assert client.options.get("use_logged_in_user") is False

    def test_explicit_use_logged_in_user_true_with_token(self):
        client = CopilotClient(
            {
                "cli_path": CLI_PATH,
                "github_token": "gho_test_token",
                "use_logged_in_user": True,
                "log_level": "error",
            }
        )
        assert client.options.get("use_logged_in_user") is True

    def test_github_token_with_cli_url_raises(self):
        with pytest.raises(
            ValueError, match="github_token and use_logged_in_user cannot be used with cli_url"
        ):
            CopilotClient(
                {"cli_url": "localhost:8080", "github_token": "gho_test_token", "log_level": "error"}
            )

    def test_use_logged_in_user_with_cli_url_raises(self):
        with pytest.raises(
            ValueError, match="github_token and use_logged_in_user cannot be used with cli_url"
        ):
            CopilotClient(
                {"cli_url": "localhost:8080", "use_logged_in_user": False, "log_level": "error"}
            )


class TestDefaults:
    def test_option_defaults(self, tmp_path):
        client = CopilotClient({"cli_path": CLI_PATH, "cwd": str(tmp_path)})

        assert client.options["use_stdio"] is True
        assert client.options["auto_start"] is True
        assert client.options["auto_restart"] is True
        assert client.options["log_level"] == "info"
        assert client.options["port"] == 0
        assert client.options["cwd"] == str(tmp_path)
        assert client.get_state() == "disconnected"

    def test_cli_path_from_environment(self, monkeypatch):
        monkeypatch.setenv("COPILOT_CLI_PATH", CLI_PATH)
        client = CopilotClient()
        assert client.options["cli_path"] == CLI_PATH
