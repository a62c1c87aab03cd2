"""
Protocol version negotiated between the SDK and the agent CLI.

The agent reports its version in the ``protocolVersion`` field of ``ping``
and ``status.get`` responses; :meth:`CopilotClient.start` refuses to talk to
an agent whose version differs.
"""

SDK_PROTOCOL_VERSION = 2


def get_sdk_protocol_version() -> int:
    """Return the protocol version this SDK speaks."""
    return SDK_PROTOCOL_VERSION
