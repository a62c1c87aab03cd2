"""Test harness for E2E tests."""

from .context import CLI_PATH, E2ETestContext
from .helper import (
    get_final_assistant_message,
    get_next_event_of_type,
    read_file,
    wait_for_state,
)

__all__ = [
    "CLI_PATH",
    "E2ETestContext",
    "get_final_assistant_message",
    "get_next_event_of_type",
    "read_file",
    "wait_for_state",
]
