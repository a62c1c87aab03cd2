"""
Test context for E2E tests.

Provides isolated directories and a client wired to the fake agent CLI.
"""

import os
import shutil
import subprocess
import sys
import tempfile
from pathlib import Path
from typing import Optional

from copilot_sdk import CopilotClient, CopilotClientOptions

CLI_PATH = str(Path(__file__).with_name("fake_cli.py").resolve())


class E2ETestContext:
    """Holds shared resources for E2E tests."""

    def __init__(self):
        self.cli_path: str = CLI_PATH
        self.home_dir: str = ""
        self.work_dir: str = ""
        self._client: Optional[CopilotClient] = None
        self._extra_clients: list[CopilotClient] = []
        self._servers: list[subprocess.Popen] = []

    async def setup(self):
        """Create the scratch directories and the shared client."""
        self.home_dir = tempfile.mkdtemp(prefix="copilot-test-state-")
        self.work_dir = tempfile.mkdtemp(prefix="copilot-test-work-")
        self._client = self.new_client()

    async def teardown(self):
        for client in [self._client, *self._extra_clients]:
            if client is not None:
                await client.force_stop()
        self._client = None
        self._extra_clients = []

        for server in self._servers:
            if server.poll() is None:
                server.kill()
                server.wait()
        self._servers = []

        for directory in (self.home_dir, self.work_dir):
            if directory and os.path.exists(directory):
                shutil.rmtree(directory, ignore_errors=True)

    async def configure_for_test(self):
        """Reset the scratch directories between tests, leaving them in place."""
        # Background turns may still be writing while we clean up
        for base in (self.home_dir, self.work_dir):
            for item in Path(base).iterdir():
                if item.is_dir():
                    shutil.rmtree(item, ignore_errors=True)
                else:
                    item.unlink(missing_ok=True)

    def get_env(self, **overrides: str) -> dict:
        """Return environment variables configured for isolated testing."""
        env = os.environ.copy()
        env.update(
            {
                "XDG_CONFIG_HOME": self.home_dir,
                "XDG_STATE_HOME": self.home_dir,
            }
        )
        env.pop("FAKE_CLI_PROTOCOL_VERSION", None)
        env.update(overrides)
        return env

    def new_client(self, options: Optional[CopilotClientOptions] = None) -> CopilotClient:
        """A client on the fake CLI, stopped automatically at teardown."""
        merged: CopilotClientOptions = {
            "cli_path": self.cli_path,
            "cwd": self.work_dir,
            "env": self.get_env(),
            "log_level": "debug",
        }
        merged.update(options or {})
        client = CopilotClient(merged)
        if self._client is not None:
            self._extra_clients.append(client)
        return client

    def start_server(self) -> int:
        """Run the fake CLI as a standalone TCP server and return its port."""
        server = subprocess.Popen(
            [sys.executable, self.cli_path, "--headless", "--port", "0"],
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            cwd=self.work_dir,
            env=self.get_env(),
        )
        self._servers.append(server)
        assert server.stdout is not None
        line = server.stdout.readline().decode()
        return int(line.rsplit(" ", 1)[-1])

    @property
    def client(self) -> CopilotClient:
        """Return the shared CopilotClient instance."""
        if not self._client:
            raise RuntimeError("Context not set up. Call setup() first.")
        return self._client
