"""
Test helper functions for E2E tests.
"""

import asyncio
import os

from copilot_sdk import CopilotSession, SessionEventType


async def get_final_assistant_message(session: CopilotSession, timeout: float = 10.0):
    """
    Wait for and return the final assistant message from a session turn.

    Raises:
        asyncio.TimeoutError: If no message arrives within timeout
        RuntimeError: If a session error occurs
    """
    result_future: asyncio.Future = asyncio.get_running_loop().create_future()
    final_assistant_message = None

    def on_event(event):
        nonlocal final_assistant_message
        if result_future.done():
            return

        if event.type == SessionEventType.ASSISTANT_MESSAGE:
            final_assistant_message = event
        elif event.type == SessionEventType.SESSION_IDLE:
            if final_assistant_message is not None:
                result_future.set_result(final_assistant_message)
        elif event.type == SessionEventType.SESSION_ERROR:
            result_future.set_exception(RuntimeError(event.data.message or "session error"))

    unsubscribe = session.on(on_event)

    try:
        # The turn may already be over
        existing = await _get_existing_final_response(session)
        if existing is not None:
            return existing

        return await asyncio.wait_for(result_future, timeout=timeout)
    finally:
        unsubscribe()


async def _get_existing_final_response(session: CopilotSession):
    messages = await session.get_messages()

    last_user = -1
    for i in range(len(messages) - 1, -1, -1):
        if messages[i].type == SessionEventType.USER_MESSAGE:
            last_user = i
            break
    current_turn = messages[last_user:] if last_user >= 0 else messages

    for msg in current_turn:
        if msg.type == SessionEventType.SESSION_ERROR:
            raise RuntimeError(msg.data.message or "session error")

    final = None
    for msg in current_turn:
        if msg.type == SessionEventType.ASSISTANT_MESSAGE:
            final = msg
        elif msg.type == SessionEventType.SESSION_IDLE:
            return final
    return None


def read_file(work_dir: str, filename: str) -> str:
    filepath = os.path.join(work_dir, filename)
    with open(filepath) as f:
        return f.read()


async def get_next_event_of_type(
    session: CopilotSession, event_type: SessionEventType, timeout: float = 10.0
):
    """
    Wait for and return the next event of a specific type from a session.

    Raises:
        asyncio.TimeoutError: If no matching event arrives within timeout
        RuntimeError: If a session error occurs
    """
    result_future: asyncio.Future = asyncio.get_running_loop().create_future()

    def on_event(event):
        if result_future.done():
            return

        if event.type == event_type:
            result_future.set_result(event)
        elif event.type == SessionEventType.SESSION_ERROR:
            result_future.set_exception(RuntimeError(event.data.message or "session error"))

    unsubscribe = session.on(on_event)

    try:
        return await asyncio.wait_for(result_future, timeout=timeout)
    finally:
        unsubscribe()


async def wait_for_state(client, state: str, timeout: float = 15.0) -> None:
    """Poll until the client reaches ``state``."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while client.get_state() != state:
        if loop.time() > deadline:
            raise asyncio.TimeoutError(f"client still {client.get_state()!r}, wanted {state!r}")
        await asyncio.sleep(0.05)
