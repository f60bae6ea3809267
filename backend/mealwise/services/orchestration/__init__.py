"""Orchestrated chat: intent classification, tool dispatch and response composition."""

from .orchestrator import (
    FALLBACK_RESPONSE,
    OrchestratedChatFlow,
    build_orchestrated_chat_flow,
    get_orchestrated_chat_flow,
)
from .types import Confidence, Intent, OrchestrationInput, OrchestrationResult, ToolName

__all__ = [
    "FALLBACK_RESPONSE",
    "OrchestratedChatFlow",
    "build_orchestrated_chat_flow",
    "get_orchestrated_chat_flow",
    "Confidence",
    "Intent",
    "OrchestrationInput",
    "OrchestrationResult",
    "ToolName",
]
