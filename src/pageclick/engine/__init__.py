"""PageClick engine -- the agent loop and its components.

- TaskOrchestrator: task state machine, loop budget, stuck detection, history digest
- SafetyPolicy: ordered rule tables mapping a proposed action to auto/confirm/block
- ActionExecutor: DOM actions against a live page, with wait strategies
- tool_adapter: provider tool calls (OpenAI tool_calls, Gemini functionCall) to canonical actions
- AgentRunner: the observe / plan / check / act loop wiring the above together
- NativeHost: length-prefixed JSON companion for clipboard and file reads
"""

from pageclick.engine.action_executor import ActionExecutor, WaitTimings
from pageclick.engine.agent_runner import AgentRunner
from pageclick.engine.cancellation import CancellationToken, TaskAborted
from pageclick.engine.debug_session import DebugSessionManager
from pageclick.engine.model_client import HttpModelClient, ModelCallError
from pageclick.engine.native_host import NativeHost, NativeHostClient, NativeHostError
from pageclick.engine.orchestrator import InvalidTransitionError, OrchestratorEvent, TaskOrchestrator
from pageclick.engine.privileged import PrivilegedActionRouter
from pageclick.engine.protocols import ActionPlan, ActionStep, ExecutionResult, LoopEntry, PolicyVerdict, TaskState
from pageclick.engine.safety_policy import AuditEntry, AuditLog, JsonlAuditSink, SafetyPolicy
from pageclick.engine.tool_adapter import ParsedToolResult, parse_tool_call_response

# Playwright-backed collaborators are imported from their modules directly:
#   from pageclick.engine.playwright_page import BrowserSession
#   from pageclick.engine.page_snapshot import PlaywrightSnapshotProvider

__all__ = [
    "ActionExecutor",
    "ActionPlan",
    "ActionStep",
    "AgentRunner",
    "AuditEntry",
    "AuditLog",
    "CancellationToken",
    "DebugSessionManager",
    "ExecutionResult",
    "HttpModelClient",
    "InvalidTransitionError",
    "JsonlAuditSink",
    "LoopEntry",
    "ModelCallError",
    "NativeHost",
    "NativeHostClient",
    "NativeHostError",
    "OrchestratorEvent",
    "ParsedToolResult",
    "PolicyVerdict",
    "PrivilegedActionRouter",
    "SafetyPolicy",
    "TaskAborted",
    "TaskOrchestrator",
    "TaskState",
    "WaitTimings",
    "parse_tool_call_response",
]
