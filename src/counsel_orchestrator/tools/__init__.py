"""Tool registry and sibling-app dispatch."""

from counsel_orchestrator.tools.bridge import SiblingBridge, SiblingBridgeError
from counsel_orchestrator.tools.registry import (
    SiblingTools,
    ToolDispatcher,
    ToolOutcome,
    ToolRegistry,
    ToolSpec,
    build_registry,
)

__all__ = [
    "SiblingBridge",
    "SiblingBridgeError",
    "SiblingTools",
    "ToolDispatcher",
    "ToolOutcome",
    "ToolRegistry",
    "ToolSpec",
    "build_registry",
]
