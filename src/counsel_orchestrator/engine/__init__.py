"""Task orchestration engine: agent loop, events, progress and the orchestrator."""

from counsel_orchestrator.engine.agent_loop import (
    AgentLoop,
    LoopResult,
    ToolCompleted,
    ToolStarted,
    summarize_input,
    truncate,
)
from counsel_orchestrator.engine.callbacks import CallbackDeliverer
from counsel_orchestrator.engine.errors import (
    TaskNotFoundError,
    TaskOrchestratorError,
    TaskTimeoutError,
)
from counsel_orchestrator.engine.events import (
    EventLog,
    EventSubscription,
    TaskEvent,
    TaskEventRecord,
    is_terminal_event,
)
from counsel_orchestrator.engine.orchestrator import TaskOrchestrator
from counsel_orchestrator.engine.progress import (
    ProgressReporter,
    ProgressTransport,
    WebhookProgressTransport,
)
from counsel_orchestrator.engine.prompts import DEFAULT_SYSTEM_PROMPT, build_system_prompt

__all__ = [
    "DEFAULT_SYSTEM_PROMPT",
    "AgentLoop",
    "CallbackDeliverer",
    "EventLog",
    "EventSubscription",
    "LoopResult",
    "ProgressReporter",
    "ProgressTransport",
    "TaskEvent",
    "TaskEventRecord",
    "TaskNotFoundError",
    "TaskOrchestrator",
    "TaskOrchestratorError",
    "TaskTimeoutError",
    "ToolCompleted",
    "ToolStarted",
    "WebhookProgressTransport",
    "build_system_prompt",
    "is_terminal_event",
    "summarize_input",
    "truncate",
]
