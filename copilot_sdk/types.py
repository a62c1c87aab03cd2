"""
Type definitions for the Copilot session SDK.

Configuration passed *into* the SDK is expressed as TypedDicts with
snake_case keys; the client converts them to the agent's camelCase wire
format. Responses coming *out of* the agent are dataclasses with a
``from_dict`` constructor that validates required fields.
"""

from __future__ import annotations

from collections.abc import Awaitable
from dataclasses import dataclass, field
from typing import Any, Callable, Literal, Optional, TypedDict, Union

from typing_extensions import NotRequired

from .events import SessionEvent

ReasoningEffort = Literal["low", "medium", "high", "xhigh"]

ConnectionState = Literal["disconnected", "connecting", "connected", "error"]

# Verbosity of the agent CLI process itself
LogLevel = Literal["none", "error", "warning", "info", "debug", "all"]


class SelectionRange(TypedDict):
    line: int
    character: int


class Selection(TypedDict):
    start: SelectionRange
    end: SelectionRange


class FileAttachment(TypedDict):
    type: Literal["file"]
    path: str
    displayName: NotRequired[str]


class DirectoryAttachment(TypedDict):
    type: Literal["directory"]
    path: str
    displayName: NotRequired[str]


class SelectionAttachment(TypedDict):
    """A text selection inside a file."""

    type: Literal["selection"]
    filePath: str
    displayName: str
    selection: NotRequired[Selection]
    text: NotRequired[str]


Attachment = Union[FileAttachment, DirectoryAttachment, SelectionAttachment]


class CopilotClientOptions(TypedDict, total=False):
    """Options for creating a CopilotClient"""

    # Agent CLI executable. Falls back to $COPILOT_CLI_PATH, a bundled binary,
    # then "copilot" on PATH. ".js" paths run under node, ".py" under Python.
    cli_path: str
    cwd: str  # Working directory of the CLI process (default: os.getcwd())
    port: int  # TCP port for a spawned CLI; 0 lets it pick one
    use_stdio: bool  # Talk over the child's stdio instead of TCP (default: True)
    # Existing agent to connect to: "port", "host:port" or "http(s)://host:port".
    # Mutually exclusive with cli_path, use_stdio and the auth options.
    cli_url: str
    log_level: LogLevel
    auto_start: bool  # Start on first create/resume (default: True)
    # Restart the agent and re-resume sessions if the connection drops (default: True)
    auto_restart: bool
    env: dict[str, str]  # Environment of the CLI process (default: os.environ)
    # Passed to the CLI through $COPILOT_SDK_AUTH_TOKEN; wins over other auth
    github_token: str
    # Allow stored OAuth / gh credentials. Defaults to False when github_token is set.
    use_logged_in_user: bool


ToolResultType = Literal["success", "failure", "rejected", "denied"]


class ToolBinaryResult(TypedDict, total=False):
    data: str
    mimeType: str
    type: str
    description: str


class ToolResult(TypedDict, total=False):
    """Result of a tool invocation, as sent back to the agent."""

    textResultForLlm: str
    binaryResultsForLlm: list[ToolBinaryResult]
    resultType: ToolResultType
    error: str
    sessionLog: str
    toolTelemetry: dict[str, Any]


class ToolInvocation(TypedDict):
    session_id: str
    tool_call_id: str
    tool_name: str
    arguments: Any


ToolHandler = Callable[[ToolInvocation], Union[ToolResult, Awaitable[ToolResult]]]


@dataclass
class Tool:
    """A function the agent may call. ``parameters`` is a JSON schema."""

    name: str
    description: str
    handler: Optional[ToolHandler] = None
    parameters: Optional[dict[str, Any]] = None

    def to_wire(self) -> dict[str, Any]:
        definition: dict[str, Any] = {"name": self.name, "description": self.description}
        if self.parameters:
            definition["parameters"] = self.parameters
        return definition


class SystemMessageAppendConfig(TypedDict, total=False):
    """Keep the agent's own system prompt and append ``content`` to it."""

    mode: NotRequired[Literal["append"]]
    content: NotRequired[str]


class SystemMessageReplaceConfig(TypedDict):
    """Use ``content`` as the entire system prompt, dropping built-in guardrails."""

    mode: Literal["replace"]
    content: str


SystemMessageConfig = Union[SystemMessageAppendConfig, SystemMessageReplaceConfig]


class PermissionRequest(TypedDict, total=False):
    kind: Literal["shell", "write", "mcp", "read", "url"]
    toolCallId: str
    # remaining fields depend on kind


PermissionDecision = Literal[
    "approved",
    "denied-by-rules",
    "denied-no-approval-rule-and-could-not-request-from-user",
    "denied-interactively-by-user",
]

DENIED_NO_APPROVAL: PermissionDecision = "denied-no-approval-rule-and-could-not-request-from-user"


class PermissionRequestResult(TypedDict, total=False):
    kind: PermissionDecision
    rules: list[Any]


PermissionHandler = Callable[
    [PermissionRequest, dict[str, str]],
    Union[PermissionRequestResult, Awaitable[PermissionRequestResult]],
]


class UserInputRequest(TypedDict, total=False):
    """A question the agent asks the user (the ask_user tool)."""

    question: str
    choices: list[str]
    allowFreeform: bool


class UserInputResponse(TypedDict):
    answer: str
    wasFreeform: bool


UserInputHandler = Callable[
    [UserInputRequest, dict[str, str]],
    Union[UserInputResponse, Awaitable[UserInputResponse]],
]


# Hooks. Every input carries "timestamp" (ms) and "cwd" plus the fields below;
# returning None from a hook means "no opinion".


class PreToolUseHookInput(TypedDict):
    timestamp: int
    cwd: str
    toolName: str
    toolArgs: Any


class PreToolUseHookOutput(TypedDict, total=False):
    permissionDecision: Literal["allow", "deny", "ask"]
    permissionDecisionReason: str
    modifiedArgs: Any
    additionalContext: str
    suppressOutput: bool


class PostToolUseHookInput(TypedDict):
    timestamp: int
    cwd: str
    toolName: str
    toolArgs: Any
    toolResult: Any


class PostToolUseHookOutput(TypedDict, total=False):
    modifiedResult: Any
    additionalContext: str
    suppressOutput: bool


class UserPromptSubmittedHookInput(TypedDict):
    timestamp: int
    cwd: str
    prompt: str


class UserPromptSubmittedHookOutput(TypedDict, total=False):
    modifiedPrompt: str
    additionalContext: str
    suppressOutput: bool


class SessionStartHookInput(TypedDict):
    timestamp: int
    cwd: str
    source: Literal["startup", "resume", "new"]
    initialPrompt: NotRequired[str]


class SessionEndHookInput(TypedDict):
    timestamp: int
    cwd: str
    reason: Literal["complete", "error", "abort", "timeout", "user_exit"]
    finalMessage: NotRequired[str]
    error: NotRequired[str]


class ErrorOccurredHookInput(TypedDict):
    timestamp: int
    cwd: str
    error: str
    errorContext: Literal["model_call", "tool_execution", "system", "user_input"]
    recoverable: bool


class ErrorOccurredHookOutput(TypedDict, total=False):
    suppressOutput: bool
    errorHandling: Literal["retry", "skip", "abort"]
    retryCount: int
    userNotification: str


HookHandler = Callable[[Any, dict[str, str]], Union[Any, Awaitable[Any]]]


class SessionHooks(TypedDict, total=False):
    on_pre_tool_use: HookHandler
    on_post_tool_use: HookHandler
    on_user_prompt_submitted: HookHandler
    on_session_start: HookHandler
    on_session_end: HookHandler
    on_error_occurred: HookHandler


class MCPLocalServerConfig(TypedDict, total=False):
    """An MCP server the agent launches as a subprocess."""

    tools: list[str]  # Tool names to expose; [] for none, ["*"] for all
    type: NotRequired[Literal["local", "stdio"]]
    timeout: NotRequired[int]  # milliseconds
    command: str
    args: list[str]
    env: NotRequired[dict[str, str]]
    cwd: NotRequired[str]


class MCPRemoteServerConfig(TypedDict, total=False):
    """An MCP server reached over HTTP or SSE."""

    tools: list[str]
    type: Literal["http", "sse"]
    timeout: NotRequired[int]
    url: str
    headers: NotRequired[dict[str, str]]


MCPServerConfig = Union[MCPLocalServerConfig, MCPRemoteServerConfig]


class CustomAgentConfig(TypedDict, total=False):
    name: str
    display_name: NotRequired[str]
    description: NotRequired[str]
    tools: NotRequired[Optional[list[str]]]  # None means every tool
    prompt: str
    mcp_servers: NotRequired[dict[str, MCPServerConfig]]
    infer: NotRequired[bool]  # Whether the model may pick this agent itself


class InfiniteSessionConfig(TypedDict, total=False):
    """
    Automatic context compaction with a persistent workspace directory.

    Compaction starts in the background once context utilisation passes
    ``background_compaction_threshold`` (default 0.80) and blocks the turn
    past ``buffer_exhaustion_threshold`` (default 0.95).
    """

    enabled: bool
    background_compaction_threshold: float
    buffer_exhaustion_threshold: float


class AzureProviderOptions(TypedDict, total=False):
    api_version: str


class ProviderConfig(TypedDict, total=False):
    """Bring-your-own-key model provider."""

    type: Literal["openai", "azure", "anthropic"]
    wire_api: Literal["completions", "responses"]
    base_url: str
    api_key: str
    bearer_token: str  # Sent as the Authorization header; wins over api_key
    azure: AzureProviderOptions


class ResumeSessionConfig(TypedDict, total=False):
    model: str
    reasoning_effort: ReasoningEffort
    tools: list[Tool]
    system_message: SystemMessageConfig
    available_tools: list[str]  # Allow-list; takes precedence over excluded_tools
    excluded_tools: list[str]
    on_permission_request: PermissionHandler
    on_user_input_request: UserInputHandler
    hooks: SessionHooks
    working_directory: str
    provider: ProviderConfig
    # Emit assistant.message_delta / assistant.reasoning_delta while generating
    streaming: bool
    mcp_servers: dict[str, MCPServerConfig]
    custom_agents: list[CustomAgentConfig]
    config_dir: str
    skill_directories: list[str]
    disabled_skills: list[str]
    infinite_sessions: InfiniteSessionConfig
    # Reattach without emitting a session.resume event
    disable_resume: bool


class SessionConfig(ResumeSessionConfig, total=False):
    session_id: str  # Custom session ID; generated by the agent when omitted


class MessageOptions(TypedDict):
    prompt: str
    attachments: NotRequired[list[Attachment]]
    # "enqueue" waits for the current turn; "immediate" steers it
    mode: NotRequired[Literal["enqueue", "immediate"]]


SessionEventHandler = Callable[[SessionEvent], None]


def _require(obj: Any, type_name: str, *names: str) -> list[Any]:
    assert isinstance(obj, dict)
    values = [obj.get(name) for name in names]
    missing = [name for name, value in zip(names, values) if value is None]
    if missing:
        raise ValueError(f"Missing required fields in {type_name}: {', '.join(missing)}")
    return values


@dataclass
class PingResponse:
    message: str
    timestamp: int  # ms since epoch
    protocolVersion: int

    @staticmethod
    def from_dict(obj: Any) -> PingResponse:
        message, timestamp, version = _require(
            obj, "PingResponse", "message", "timestamp", "protocolVersion"
        )
        return PingResponse(str(message), int(timestamp), int(version))


@dataclass
class StopError:
    """A cleanup step that failed during :meth:`CopilotClient.stop`."""

    message: str


@dataclass
class GetStatusResponse:
    version: str
    protocolVersion: int

    @staticmethod
    def from_dict(obj: Any) -> GetStatusResponse:
        version, protocol_version = _require(obj, "GetStatusResponse", "version", "protocolVersion")
        return GetStatusResponse(str(version), int(protocol_version))


@dataclass
class GetAuthStatusResponse:
    isAuthenticated: bool
    authType: Optional[str] = None
    host: Optional[str] = None
    login: Optional[str] = None
    statusMessage: Optional[str] = None

    @staticmethod
    def from_dict(obj: Any) -> GetAuthStatusResponse:
        (is_authenticated,) = _require(obj, "GetAuthStatusResponse", "isAuthenticated")
        return GetAuthStatusResponse(
            isAuthenticated=bool(is_authenticated),
            authType=obj.get("authType"),
            host=obj.get("host"),
            login=obj.get("login"),
            statusMessage=obj.get("statusMessage"),
        )


@dataclass
class ModelSupports:
    vision: bool
    reasoning_effort: bool = False

    @staticmethod
    def from_dict(obj: Any) -> ModelSupports:
        (vision,) = _require(obj, "ModelSupports", "vision")
        return ModelSupports(vision=bool(vision), reasoning_effort=bool(obj.get("reasoningEffort")))


@dataclass
class ModelLimits:
    max_prompt_tokens: Optional[int] = None
    max_context_window_tokens: Optional[int] = None

    @staticmethod
    def from_dict(obj: Any) -> ModelLimits:
        assert isinstance(obj, dict)
        return ModelLimits(
            max_prompt_tokens=obj.get("max_prompt_tokens"),
            max_context_window_tokens=obj.get("max_context_window_tokens"),
        )


@dataclass
class ModelCapabilities:
    supports: ModelSupports
    limits: ModelLimits

    @staticmethod
    def from_dict(obj: Any) -> ModelCapabilities:
        supports, limits = _require(obj, "ModelCapabilities", "supports", "limits")
        return ModelCapabilities(ModelSupports.from_dict(supports), ModelLimits.from_dict(limits))


@dataclass
class ModelPolicy:
    state: str  # "enabled", "disabled" or "unconfigured"
    terms: str

    @staticmethod
    def from_dict(obj: Any) -> ModelPolicy:
        state, terms = _require(obj, "ModelPolicy", "state", "terms")
        return ModelPolicy(str(state), str(terms))


@dataclass
class ModelBilling:
    multiplier: float

    @staticmethod
    def from_dict(obj: Any) -> ModelBilling:
        (multiplier,) = _require(obj, "ModelBilling", "multiplier")
        return ModelBilling(float(multiplier))


@dataclass
class ModelInfo:
    id: str
    name: str
    capabilities: ModelCapabilities
    policy: Optional[ModelPolicy] = None
    billing: Optional[ModelBilling] = None
    supported_reasoning_efforts: Optional[list[str]] = None
    default_reasoning_effort: Optional[str] = None

    @staticmethod
    def from_dict(obj: Any) -> ModelInfo:
        model_id, name, capabilities = _require(obj, "ModelInfo", "id", "name", "capabilities")
        policy = obj.get("policy")
        billing = obj.get("billing")
        return ModelInfo(
            id=str(model_id),
            name=str(name),
            capabilities=ModelCapabilities.from_dict(capabilities),
            policy=ModelPolicy.from_dict(policy) if policy else None,
            billing=ModelBilling.from_dict(billing) if billing else None,
            supported_reasoning_efforts=obj.get("supportedReasoningEfforts"),
            default_reasoning_effort=obj.get("defaultReasoningEffort"),
        )


@dataclass
class SessionContext:
    """Where a session was started."""

    cwd: str
    gitRoot: Optional[str] = None
    repository: Optional[str] = None  # "owner/repo"
    branch: Optional[str] = None

    @staticmethod
    def from_dict(obj: Any) -> SessionContext:
        (cwd,) = _require(obj, "SessionContext", "cwd")
        return SessionContext(
            cwd=str(cwd),
            gitRoot=obj.get("gitRoot"),
            repository=obj.get("repository"),
            branch=obj.get("branch"),
        )


@dataclass
class SessionMetadata:
    sessionId: str
    startTime: str  # ISO 8601
    modifiedTime: str  # ISO 8601
    isRemote: bool
    summary: Optional[str] = None
    context: Optional[SessionContext] = None

    @staticmethod
    def from_dict(obj: Any) -> SessionMetadata:
        session_id, start, modified, is_remote = _require(
            obj, "SessionMetadata", "sessionId", "startTime", "modifiedTime", "isRemote"
        )
        context = obj.get("context")
        return SessionMetadata(
            sessionId=str(session_id),
            startTime=str(start),
            modifiedTime=str(modified),
            isRemote=bool(is_remote),
            summary=obj.get("summary"),
            context=SessionContext.from_dict(context) if context else None,
        )


SessionLifecycleEventType = Literal[
    "session.created",
    "session.deleted",
    "session.updated",
    "session.foreground",
    "session.background",
]


@dataclass
class SessionLifecycleEvent:
    type: SessionLifecycleEventType
    sessionId: str
    metadata: dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def from_dict(data: dict) -> SessionLifecycleEvent:
        return SessionLifecycleEvent(
            type=data.get("type", "session.updated"),
            sessionId=data.get("sessionId", ""),
            metadata=data.get("metadata") or {},
        )


SessionLifecycleHandler = Callable[[SessionLifecycleEvent], None]
