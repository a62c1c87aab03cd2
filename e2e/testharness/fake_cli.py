"""
Scripted stand-in for the agent CLI, used by the E2E tests.

Speaks the same framed JSON-RPC as the real agent over stdio (``--stdio``)
or TCP (prints ``listening on port N``). Sessions are persisted as JSON
under ``$XDG_STATE_HOME/fake-cli/sessions`` so a restarted process can
resume them.

Replies are chosen from the prompt text:

* ``<a> <op> <b>``          arithmetic; "double that" reuses the last answer
* ``your name``             identity, honouring the system message
* ``call <tool> with {...}`` invoke a client tool with JSON arguments
* ``create file X with content Y``  ask permission, then write the file
* ``ask me``                ask the user a question
* ``wait for abort``        block until session.abort
* ``fail``                  emit session.error
* ``crash``                 exit while answering session.send
"""

import argparse
import itertools
import json
import os
import re
import socket
import sys
import threading
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path

VERSION = "0.0.0-fake"
DEFAULT_MODEL = "fake-default-model"

MODELS = [
    {
        "id": "fake-test-model",
        "name": "Fake Test Model",
        "capabilities": {
            "supports": {"vision": False, "reasoningEffort": False},
            "limits": {"max_context_window_tokens": 128000},
        },
        "policy": {"state": "enabled", "terms": ""},
        "billing": {"multiplier": 1.0},
    },
    {
        "id": "fake-reasoning-model",
        "name": "Fake Reasoning Model",
        "capabilities": {
            "supports": {"vision": True, "reasoningEffort": True},
            "limits": {"max_prompt_tokens": 64000, "max_context_window_tokens": 200000},
        },
        "supportedReasoningEfforts": ["low", "medium", "high"],
        "defaultReasoningEffort": "medium",
    },
]


class RpcError(Exception):
    def __init__(self, code, message):
        super().__init__(message)
        self.code = code
        self.message = message


def now_iso():
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def protocol_version():
    value = os.environ.get("FAKE_CLI_PROTOCOL_VERSION", "2")
    return None if value == "none" else int(value)


class Store:
    """Sessions on disk plus the in-memory state of active ones."""

    def __init__(self):
        base = os.environ.get("XDG_STATE_HOME") or os.path.join(os.getcwd(), ".fake-cli-state")
        self.root = Path(base) / "fake-cli"
        self.sessions_dir = self.root / "sessions"
        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        self.active = {}
        self.lock = threading.RLock()

    def path(self, session_id):
        return self.sessions_dir / f"{session_id}.json"

    def load(self, session_id):
        path = self.path(session_id)
        if not path.exists():
            return None
        return json.loads(path.read_text())

    def save(self, record):
        record["modifiedTime"] = now_iso()
        # tests may wipe the state directory between runs
        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        with self.lock:
            path = self.path(record["sessionId"])
            tmp = path.with_suffix(".tmp")
            tmp.write_text(json.dumps(record))
            os.replace(tmp, path)

    def delete(self, session_id):
        with self.lock:
            self.active.pop(session_id, None)
            path = self.path(session_id)
            if not path.exists():
                return False
            path.unlink()
            return True

    def all(self):
        return [json.loads(p.read_text()) for p in sorted(self.sessions_dir.glob("*.json"))]


class Session:
    def __init__(self, record, config, connection):
        self.record = record
        self.config = config
        self.connection = connection
        self.abort_requested = threading.Event()
        self.last_number = None

    @property
    def session_id(self):
        return self.record["sessionId"]

    @property
    def cwd(self):
        return self.config.get("workingDirectory") or self.record["context"]["cwd"]

    def emit(self, event_type, data, ephemeral=False):
        events = self.record["events"]
        event = {
            "id": str(uuid.uuid4()),
            "timestamp": now_iso(),
            "parentId": events[-1]["id"] if events else None,
            "type": event_type,
            "data": data,
        }
        if ephemeral:
            event["ephemeral"] = True
        else:
            events.append(event)
        self.connection.notify("session.event", {"sessionId": self.session_id, "event": event})
        return event

    def invoke_hook(self, hook_type, payload):
        if not self.config.get("hooks"):
            return None
        hook_input = {"timestamp": int(time.time() * 1000), "cwd": self.cwd, **payload}
        response = self.connection.request(
            "hooks.invoke",
            {"sessionId": self.session_id, "hookType": hook_type, "input": hook_input},
        )
        return response.get("output")

    def run_turn(self, prompt, attachments):
        self.abort_requested.clear()
        self.emit("user.message", {"content": prompt, "attachments": attachments or []})

        hook_output = self.invoke_hook("userPromptSubmitted", {"prompt": prompt})
        if hook_output and hook_output.get("modifiedPrompt"):
            prompt = hook_output["modifiedPrompt"]

        turn_id = str(uuid.uuid4())
        self.emit("assistant.turn_start", {"turnId": turn_id})
        try:
            reply = self.reply_to(prompt)
        except RpcError as e:
            self.emit("session.error", {"errorType": "tool", "message": e.message})
            self.emit("session.idle", {})
            return

        if reply is None:
            self.emit("session.idle", {})
            return

        message_id = str(uuid.uuid4())
        if self.config.get("streaming"):
            for start in range(0, len(reply), 8):
                self.emit(
                    "assistant.message_delta",
                    {"messageId": message_id, "deltaContent": reply[start : start + 8]},
                    ephemeral=True,
                )
        self.emit("assistant.message", {"messageId": message_id, "content": reply})
        self.emit(
            "assistant.usage",
            {"model": self.model, "inputTokens": len(prompt), "outputTokens": len(reply)},
            ephemeral=True,
        )
        self.emit("assistant.turn_end", {"turnId": turn_id})
        self.emit("session.idle", {})
        self.record["summary"] = self.record.get("summary") or prompt[:60]
        self.connection.store.save(self.record)

    @property
    def model(self):
        return self.config.get("model") or DEFAULT_MODEL

    def reply_to(self, prompt):
        text = prompt.lower()

        if "wait for abort" in text:
            self.abort_requested.wait(timeout=30)
            self.emit("abort", {"reason": "user initiated"})
            return None

        if text.strip() == "fail":
            self.emit("session.error", {"errorType": "model", "message": "Simulated failure"})
            return None

        match = re.search(r"call (\w+) with (\{.*\})", prompt)
        if match:
            return self.call_tool(match.group(1), json.loads(match.group(2)))

        match = re.search(r"create file (\S+) with content (.+)", prompt)
        if match:
            return self.write_file(match.group(1), match.group(2))

        if "ask me" in text:
            return self.ask_user()

        if "double that" in text and self.last_number is not None:
            self.last_number *= 2
            return self.decorate(f"That gives {self.last_number}.")

        match = re.search(r"(-?\d+)\s*([+\-*])\s*(-?\d+)", prompt)
        if match:
            a, op, b = int(match.group(1)), match.group(2), int(match.group(3))
            self.last_number = {"+": a + b, "-": a - b, "*": a * b}[op]
            return self.decorate(f"{a} {op} {b} = {self.last_number}")

        if "your name" in text:
            system_message = self.config.get("systemMessage") or {}
            if system_message.get("mode") == "replace":
                return f"I follow these instructions: {system_message['content']}"
            return self.decorate("I am GitHub Copilot, an AI assistant.")

        return self.decorate(f"You said: {prompt}")

    def decorate(self, reply):
        system_message = self.config.get("systemMessage") or {}
        if system_message.get("mode", "append") == "append" and system_message.get("content"):
            return f"{reply} {system_message['content']}"
        return reply

    def call_tool(self, tool_name, arguments):
        tool_call_id = f"call_{uuid.uuid4().hex[:12]}"
        hook_output = self.invoke_hook("preToolUse", {"toolName": tool_name, "toolArgs": arguments})
        if hook_output and hook_output.get("permissionDecision") == "deny":
            return f"Tool {tool_name} was blocked by a hook."

        self.emit(
            "tool.execution_start",
            {"toolCallId": tool_call_id, "toolName": tool_name, "arguments": arguments},
        )
        response = self.connection.request(
            "tool.call",
            {
                "sessionId": self.session_id,
                "toolCallId": tool_call_id,
                "toolName": tool_name,
                "arguments": arguments,
            },
        )
        result = response["result"]
        success = result.get("resultType") == "success"
        self.emit(
            "tool.execution_complete",
            {
                "toolCallId": tool_call_id,
                "success": success,
                "result": {"content": result.get("textResultForLlm", "")},
            },
        )
        self.invoke_hook(
            "postToolUse", {"toolName": tool_name, "toolArgs": arguments, "toolResult": result}
        )
        if success:
            return f"{tool_name} returned: {result.get('textResultForLlm', '')}"
        return f"{tool_name} failed: {result.get('textResultForLlm', '')}"

    def write_file(self, file_name, content):
        decision = "denied-no-approval-rule-and-could-not-request-from-user"
        if self.config.get("requestPermission"):
            response = self.connection.request(
                "permission.request",
                {
                    "sessionId": self.session_id,
                    "permissionRequest": {
                        "kind": "write",
                        "toolCallId": f"call_{uuid.uuid4().hex[:12]}",
                        "fileName": file_name,
                        "intention": f"Create {file_name}",
                    },
                },
            )
            decision = response["result"].get("kind", decision)

        if decision != "approved":
            return f"Permission to write {file_name} was denied ({decision})."
        Path(self.cwd, file_name).write_text(content)
        return f"Created {file_name}."

    def ask_user(self):
        if not self.config.get("requestUserInput"):
            return "I cannot ask you anything in this session."
        response = self.connection.request(
            "userInput.request",
            {
                "sessionId": self.session_id,
                "question": "What is your favourite colour?",
                "choices": ["red", "blue"],
                "allowFreeform": True,
            },
        )
        kind = "freeform" if response.get("wasFreeform") else "choice"
        return f"You answered {response['answer']} ({kind})."


class Connection:
    """One JSON-RPC peer: the SDK client on stdio or an accepted socket."""

    def __init__(self, reader, writer, store, options):
        self.reader = reader
        self.writer = writer
        self.store = store
        self.options = options
        self.write_lock = threading.Lock()
        self.ids = itertools.count(1)
        self.pending = {}
        self.pending_lock = threading.Lock()

    def write(self, message):
        body = json.dumps(message).encode("utf-8")
        with self.write_lock:
            self.writer.write(f"Content-Length: {len(body)}\r\n\r\n".encode("ascii") + body)
            self.writer.flush()

    def read(self):
        length = None
        while True:
            line = self.reader.readline()
            if not line:
                return None
            line = line.strip()
            if not line:
                break
            name, _, value = line.decode("ascii").partition(":")
            if name.lower() == "content-length":
                length = int(value)
        body = b""
        while len(body) < length:
            chunk = self.reader.read(length - len(body))
            if not chunk:
                return None
            body += chunk
        return json.loads(body)

    def notify(self, method, params):
        self.write({"jsonrpc": "2.0", "method": method, "params": params})

    def request(self, method, params, timeout=30):
        request_id = next(self.ids)
        slot = {"event": threading.Event()}
        with self.pending_lock:
            self.pending[request_id] = slot
        self.write({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params})
        if not slot["event"].wait(timeout):
            raise RpcError(-32603, f"{method} timed out")
        if "error" in slot:
            raise RpcError(slot["error"].get("code", -32603), slot["error"].get("message", ""))
        return slot["result"]

    def serve(self):
        while True:
            message = self.read()
            if message is None:
                return
            if "method" not in message:
                with self.pending_lock:
                    slot = self.pending.pop(message.get("id"), None)
                if slot is not None:
                    slot.update({k: v for k, v in message.items() if k in ("result", "error")})
                    slot["event"].set()
                continue

            method, params = message["method"], message.get("params") or {}
            if "id" not in message:
                continue
            after = None
            try:
                result = self.handle(method, params)
                if isinstance(result, tuple):
                    result, after = result
                self.write({"jsonrpc": "2.0", "id": message["id"], "result": result})
            except RpcError as e:
                self.write(
                    {
                        "jsonrpc": "2.0",
                        "id": message["id"],
                        "error": {"code": e.code, "message": e.message},
                    }
                )
            if after is not None:
                threading.Thread(target=after, daemon=True).start()

    def session(self, params):
        session_id = params.get("sessionId")
        with self.store.lock:
            session = self.store.active.get(session_id)
        if session is None:
            raise RpcError(-32603, f"Session not found: {session_id}")
        return session

    def activate(self, record, params):
        session = Session(record, params, self)
        with self.store.lock:
            self.store.active[record["sessionId"]] = session
        return session

    def session_result(self, session):
        result = {"sessionId": session.session_id}
        infinite = session.config.get("infiniteSessions") or {}
        if infinite.get("enabled", True) and "infiniteSessions" in session.config:
            workspace = self.store.root / "workspaces" / session.session_id
            workspace.mkdir(parents=True, exist_ok=True)
            result["workspacePath"] = str(workspace)
        return result

    def handle(self, method, params):
        if method == "ping":
            result = {"message": f"pong: {params.get('message')}", "timestamp": int(time.time() * 1000)}
            version = protocol_version()
            if version is not None:
                result["protocolVersion"] = version
            return result

        if method == "status.get":
            return {"version": VERSION, "protocolVersion": protocol_version() or 0}

        if method == "auth.getStatus":
            token_env = self.options.auth_token_env
            if token_env and os.environ.get(token_env):
                return {"isAuthenticated": True, "authType": "token", "login": "fake-user",
                        "host": "https://github.com"}
            if self.options.no_auto_login:
                return {"isAuthenticated": False, "statusMessage": "Not logged in"}
            return {"isAuthenticated": True, "authType": "user", "login": "fake-user",
                    "host": "https://github.com"}

        if method == "models.list":
            return {"models": MODELS}

        if method == "session.create":
            session_id = params.get("sessionId") or str(uuid.uuid4())
            started = now_iso()
            record = {
                "sessionId": session_id,
                "startTime": started,
                "modifiedTime": started,
                "summary": None,
                "context": {"cwd": os.getcwd()},
                "events": [],
            }
            session = self.activate(record, params)
            session.emit(
                "session.start",
                {
                    "sessionId": session_id,
                    "version": 1,
                    "producer": "fake-cli",
                    "copilotVersion": VERSION,
                    "startTime": started,
                    "selectedModel": session.model,
                },
            )
            self.store.save(record)
            self.notify("session.lifecycle", {"type": "session.created", "sessionId": session_id})
            return self.session_result(session)

        if method == "session.resume":
            session_id = params.get("sessionId")
            with self.store.lock:
                existing = self.store.active.get(session_id)
            record = existing.record if existing else self.store.load(session_id)
            if record is None:
                raise RpcError(-32603, f"Session not found: {session_id}")
            session = self.activate(record, params)
            if not params.get("disableResume"):
                session.emit(
                    "session.resume",
                    {"resumeTime": now_iso(), "eventCount": len(record["events"])},
                )
            self.store.save(record)
            return self.session_result(session)

        if method == "session.send":
            session = self.session(params)
            prompt = params.get("prompt", "")
            if "crash" in prompt.lower():
                os._exit(3)
            message_id = str(uuid.uuid4())
            return {"messageId": message_id}, lambda: session.run_turn(
                prompt, params.get("attachments")
            )

        if method == "session.getMessages":
            return {"events": list(self.session(params).record["events"])}

        if method == "session.abort":
            self.session(params).abort_requested.set()
            return {}

        if method == "session.destroy":
            session = self.session(params)
            with self.store.lock:
                self.store.active.pop(session.session_id, None)
            self.store.save(session.record)
            return {}

        if method == "session.list":
            return {
                "sessions": [
                    {
                        "sessionId": r["sessionId"],
                        "startTime": r["startTime"],
                        "modifiedTime": r["modifiedTime"],
                        "summary": r.get("summary"),
                        "isRemote": False,
                        "context": r.get("context"),
                    }
                    for r in self.store.all()
                ]
            }

        if method == "session.delete":
            session_id = params.get("sessionId")
            if not self.store.delete(session_id):
                return {"success": False, "error": f"Session not found: {session_id}"}
            self.notify("session.lifecycle", {"type": "session.deleted", "sessionId": session_id})
            return {"success": True}

        raise RpcError(-32601, f"Method not found: {method}")


def serve_tcp(port, store, options):
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    server.bind(("127.0.0.1", port))
    server.listen()
    sys.stdout.write(f"CLI server listening on port {server.getsockname()[1]}\n")
    sys.stdout.flush()

    while True:
        conn, _ = server.accept()
        stream = conn.makefile("rwb", buffering=0)
        connection = Connection(stream, stream, store, options)
        threading.Thread(target=connection.serve, daemon=True).start()


def main():
    parser = argparse.ArgumentParser(prog="fake-copilot-cli")
    parser.add_argument("--headless", action="store_true")
    parser.add_argument("--no-auto-update", action="store_true")
    parser.add_argument("--log-level", default="info")
    parser.add_argument("--auth-token-env")
    parser.add_argument("--no-auto-login", action="store_true")
    parser.add_argument("--stdio", action="store_true")
    parser.add_argument("--port", type=int, default=0)
    options = parser.parse_args()

    sys.stderr.write(f"fake cli starting (log level {options.log_level})\n")
    sys.stderr.flush()
    store = Store()

    if options.stdio:
        Connection(sys.stdin.buffer, sys.stdout.buffer, store, options).serve()
    else:
        serve_tcp(options.port, store, options)


if __name__ == "__main__":
    main()
