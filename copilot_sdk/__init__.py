"""
Copilot Session SDK - Python client for the Copilot agent CLI

JSON-RPC based SDK for driving agent sessions: conversations, custom tools,
permission and user-input callbacks, and hooks.
"""

import logging

from .client import CopilotClient
from .events import Data, SessionEvent, SessionEventType
from .jsonrpc import ConnectionLostError, JsonRpcError
from .protocol import SDK_PROTOCOL_VERSION, get_sdk_protocol_version
from .session import CopilotSession, SessionError
from .tools import ToolRegistry, define_tool
from .types import (
    Attachment,
    AzureProviderOptions,
    ConnectionState,
    CopilotClientOptions,
    CustomAgentConfig,
    GetAuthStatusResponse,
    GetStatusResponse,
    InfiniteSessionConfig,
    MCPLocalServerConfig,
    MCPRemoteServerConfig,
    MCPServerConfig,
    MessageOptions,
    ModelBilling,
    ModelCapabilities,
    ModelInfo,
    ModelPolicy,
    PermissionHandler,
    PermissionRequest,
    PermissionRequestResult,
    PingResponse,
    ProviderConfig,
    ResumeSessionConfig,
    SessionConfig,
    SessionContext,
    SessionHooks,
    SessionLifecycleEvent,
    SessionLifecycleEventType,
    SessionMetadata,
    StopError,
    SystemMessageConfig,
    Tool,
    ToolHandler,
    ToolInvocation,
    ToolResult,
    UserInputHandler,
    UserInputRequest,
    UserInputResponse,
)

__version__ = "0.1.0"

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "SDK_PROTOCOL_VERSION",
    "Attachment",
    "AzureProviderOptions",
    "ConnectionLostError",
    "ConnectionState",
    "CopilotClient",
    "CopilotClientOptions",
    "CopilotSession",
    "CustomAgentConfig",
    "Data",
    "GetAuthStatusResponse",
    "GetStatusResponse",
    "InfiniteSessionConfig",
    "JsonRpcError",
    "MCPLocalServerConfig",
    "MCPRemoteServerConfig",
    "MCPServerConfig",
    "MessageOptions",
    "ModelBilling",
    "ModelCapabilities",
    "ModelInfo",
    "ModelPolicy",
    "PermissionHandler",
    "PermissionRequest",
    "PermissionRequestResult",
    "PingResponse",
    "ProviderConfig",
    "ResumeSessionConfig",
    "SessionConfig",
    "SessionContext",
    "SessionError",
    "SessionEvent",
    "SessionEventType",
    "SessionHooks",
    "SessionLifecycleEvent",
    "SessionLifecycleEventType",
    "SessionMetadata",
    "StopError",
    "SystemMessageConfig",
    "Tool",
    "ToolHandler",
    "ToolInvocation",
    "ToolRegistry",
    "ToolResult",
    "UserInputHandler",
    "UserInputRequest",
    "UserInputResponse",
    "define_tool",
    "get_sdk_protocol_version",
]
