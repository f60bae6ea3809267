"""
Error taxonomy for the orchestrated chat flow.

Only ``ModelUnavailableError`` raised while classifying is allowed to abort a
turn; everything else is recovered inside the dispatcher or the composer.
"""
from typing import Any, Dict, List, Optional


class OrchestrationError(Exception):
    """Base class for all orchestration errors."""


class ClassificationAmbiguous(OrchestrationError):
    """The classifier produced an unrecognized or missing intent."""

    def __init__(self, raw_intent: Any = None):
        self.raw_intent = raw_intent
        super().__init__(f"Unrecognized intent: {raw_intent!r}")


class ToolNotFoundError(OrchestrationError):
    """A tool name was looked up that is not registered."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Tool not registered: {name}")


class ToolValidationError(OrchestrationError):
    """Tool arguments failed schema validation (or referenced missing data)."""

    def __init__(self, tool_name: str, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        self.tool_name = tool_name
        self.errors = errors or []
        super().__init__(f"{tool_name}: {message}")

    @property
    def hint(self) -> str:
        """Short description suitable for appending to an extraction prompt."""
        if not self.errors:
            return str(self)
        parts = []
        for err in self.errors:
            loc = ".".join(str(p) for p in err.get("loc", ()))
            parts.append(f"{loc}: {err.get('msg', 'invalid value')}" if loc else err.get("msg", "invalid value"))
        return "; ".join(parts)


class MissingContextError(OrchestrationError):
    """A tool needs a value (e.g. a meal plan id) found in neither args nor context."""

    def __init__(self, tool_name: str, field: str):
        self.tool_name = tool_name
        self.field = field
        super().__init__(f"{tool_name} requires '{field}' but none is available")


class ToolExecutionError(OrchestrationError):
    """Infrastructure failure while a tool ran (database, network). Never retried."""

    def __init__(self, tool_name: str, message: str):
        self.tool_name = tool_name
        super().__init__(f"{tool_name}: {message}")


class ModelUnavailableError(OrchestrationError):
    """The LLM/VLM endpoint could not be reached or timed out."""


class MalformedOutputError(OrchestrationError):
    """The model answered but its output could not be parsed into the expected shape."""

    def __init__(self, message: str, raw: str = ""):
        self.raw = raw
        super().__init__(message)
