"""
Getting a byte stream to the agent: spawning the CLI or dialing a TCP port.

Both paths produce an object with ``stdin``/``stdout`` streams that
:class:`~copilot_sdk.jsonrpc.JsonRpcClient` can read and write, plus the
``terminate``/``kill``/``wait`` methods the client uses for cleanup.
"""

import asyncio
import logging
import os
import re
import shutil
import socket
import subprocess
import sys
import threading
from pathlib import Path
from typing import Any, Optional

from .types import CopilotClientOptions

logger = logging.getLogger(__name__)

AUTH_TOKEN_ENV = "COPILOT_SDK_AUTH_TOKEN"
CLI_PATH_ENV = "COPILOT_CLI_PATH"
TCP_CONNECT_TIMEOUT = 10.0
PORT_ANNOUNCE_TIMEOUT = 10.0

_PORT_ANNOUNCEMENT = re.compile(r"listening on port (\d+)", re.IGNORECASE)


def parse_cli_url(url: str) -> tuple[str, int]:
    """
    Split a CLI URL into host and port.

    Accepts "port", "host:port", "http://host:port" and "https://host:port";
    the host defaults to localhost.

    Raises:
        ValueError: If the format is invalid or the port is not in 1..65535.
    """
    clean = re.sub(r"^https?://", "", url)

    if clean.isdigit():
        host, port_text = "localhost", clean
    else:
        parts = clean.split(":")
        if len(parts) != 2:
            raise ValueError(f"Invalid cli_url format: {url}")
        host, port_text = parts[0] or "localhost", parts[1]

    try:
        port = int(port_text)
    except ValueError as e:
        raise ValueError(f"Invalid port in cli_url: {url}") from e
    if not 0 < port <= 65535:
        raise ValueError(f"Invalid port in cli_url: {url}")
    return host, port


def _bundled_cli_path() -> Optional[str]:
    binary = "copilot.exe" if sys.platform == "win32" else "copilot"
    path = Path(__file__).parent / "bin" / binary
    return str(path) if path.exists() else None


def resolve_cli_path(explicit: Optional[str]) -> str:
    """
    Pick the CLI executable: explicit option, $COPILOT_CLI_PATH, the binary
    bundled with the package, then ``copilot`` on PATH.

    Raises:
        RuntimeError: If none of them is available.
    """
    candidate = explicit or os.environ.get(CLI_PATH_ENV) or _bundled_cli_path()
    if candidate:
        return candidate
    on_path = shutil.which("copilot")
    if on_path:
        return on_path
    raise RuntimeError(
        "Copilot CLI not found. Pass cli_path, set $COPILOT_CLI_PATH, "
        "or install the CLI so that 'copilot' is on PATH."
    )


def build_cli_command(options: CopilotClientOptions) -> tuple[list[str], dict[str, str]]:
    """Return the argv and environment used to launch the CLI server."""
    cli_path = options["cli_path"]
    args = ["--headless", "--no-auto-update", "--log-level", options["log_level"]]

    if options.get("github_token"):
        args.extend(["--auth-token-env", AUTH_TOKEN_ENV])
    if not options.get("use_logged_in_user", True):
        args.append("--no-auto-login")

    if options["use_stdio"]:
        args.append("--stdio")
    elif options.get("port", 0) > 0:
        args.extend(["--port", str(options["port"])])

    # Shebangs are not honoured everywhere, so interpreters are explicit
    if cli_path.endswith(".js"):
        command = ["node", cli_path]
    elif cli_path.endswith(".py"):
        command = [sys.executable, cli_path]
    else:
        command = [cli_path]

    env = dict(options["env"]) if options.get("env") else dict(os.environ)
    if options.get("github_token"):
        env[AUTH_TOKEN_ENV] = options["github_token"]

    return command + args, env


class CliProcess:
    """A spawned agent CLI whose stderr is forwarded to the logger."""

    def __init__(self, options: CopilotClientOptions):
        cli_path = options["cli_path"]
        if not os.path.exists(cli_path):
            raise RuntimeError(f"Copilot CLI not found at {cli_path}")

        argv, env = build_cli_command(options)
        logger.debug("Starting Copilot CLI: %s", " ".join(argv))
        self.process = subprocess.Popen(
            argv,
            stdin=subprocess.PIPE if options["use_stdio"] else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            bufsize=0,
            cwd=options["cwd"],
            env=env,
        )
        self._stderr_thread = threading.Thread(
            target=self._drain_stderr, name="copilot-cli-stderr", daemon=True
        )
        self._stderr_thread.start()

    @property
    def stdin(self) -> Any:
        return self.process.stdin

    @property
    def stdout(self) -> Any:
        return self.process.stdout

    def _drain_stderr(self) -> None:
        stream = self.process.stderr
        if stream is None:
            return
        for line in iter(stream.readline, b""):
            logger.debug("[CLI] %s", line.decode("utf-8", errors="replace").rstrip())

    async def wait_for_port(self, timeout: float = PORT_ANNOUNCE_TIMEOUT) -> int:
        """Read stdout until the CLI announces the TCP port it listens on."""
        loop = asyncio.get_running_loop()
        stdout = self.process.stdout
        assert stdout is not None

        async def read_port() -> int:
            while True:
                line = await loop.run_in_executor(None, stdout.readline)
                if not line:
                    raise RuntimeError("CLI process exited before announcing port")
                match = _PORT_ANNOUNCEMENT.search(line.decode("utf-8", errors="replace"))
                if match:
                    return int(match.group(1))

        try:
            return await asyncio.wait_for(read_port(), timeout=timeout)
        except asyncio.TimeoutError:
            raise RuntimeError("Timeout waiting for CLI server to start") from None

    def terminate(self, grace: float = 5.0) -> None:
        """Ask the CLI to exit, killing it if it is still running after ``grace`` seconds."""
        if self.process.poll() is not None:
            return
        self.process.terminate()
        try:
            self.process.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            self.process.kill()
            self.process.wait()

    def kill(self) -> None:
        if self.process.poll() is None:
            self.process.kill()
            self.process.wait()


class SocketConnection:
    """A TCP connection presented with the same surface as a CLI process."""

    def __init__(self, sock: socket.socket):
        self._socket = sock
        stream = sock.makefile("rwb", buffering=0)
        self.stdin = stream
        self.stdout = stream

    def terminate(self, grace: float = 0.0) -> None:
        try:
            self._socket.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._socket.close()

    def kill(self) -> None:
        self.terminate()


async def connect_tcp(host: str, port: int, timeout: float = TCP_CONNECT_TIMEOUT) -> SocketConnection:
    """
    Open a TCP connection to an agent server.

    Raises:
        RuntimeError: If the connection cannot be established.
    """
    loop = asyncio.get_running_loop()

    def dial() -> socket.socket:
        return socket.create_connection((host, port), timeout=timeout)

    try:
        sock = await loop.run_in_executor(None, dial)
    except OSError as e:
        raise RuntimeError(f"Failed to connect to CLI server at {host}:{port}: {e}") from e
    sock.settimeout(None)
    return SocketConnection(sock)
