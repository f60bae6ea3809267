"""Tool descriptors and the registry the dispatcher looks them up in."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Mapping, Type

from pydantic import BaseModel, Field, ValidationError

from mealwise.core.exceptions import ToolNotFoundError, ToolValidationError
from mealwise.core.logging import get_logger
from mealwise.services.orchestration.types import SessionContext, ToolName

logger = get_logger("services.orchestration.registry")


class ToolResult(BaseModel):
    """What a tool hands back: a JSON-ready payload and the context fields it produced."""
    payload: Dict[str, Any]
    context_patch: Dict[str, Any] = Field(default_factory=dict)


ToolHandler = Callable[[Any, SessionContext], Awaitable[ToolResult]]


@dataclass(frozen=True)
class ToolDescriptor:
    """
    A registered tool.

    Attributes:
        name: Tool name
        input_model: Pydantic model the arguments must validate against
        handler: Coroutine receiving the validated arguments and the context
        mutates_context: Whether successful results patch the session context
        mutates_state: Whether the tool writes to external state (never retried on timeout)
        structured_key: Key under which the payload appears in structured data
        context_args: Argument name -> context field used when the argument is absent
        description: Short human-readable description
    """
    name: ToolName
    input_model: Type[BaseModel]
    handler: ToolHandler
    mutates_context: bool = False
    mutates_state: bool = False
    structured_key: str = ""
    context_args: Mapping[str, str] = field(default_factory=dict)
    description: str = ""

    @property
    def input_schema(self) -> Dict[str, Any]:
        return self.input_model.model_json_schema()

    def validate(self, args: Mapping[str, Any]) -> BaseModel:
        """Validate raw arguments, raising ToolValidationError on failure."""
        try:
            return self.input_model.model_validate(dict(args))
        except ValidationError as e:
            errors = [{"loc": err["loc"], "msg": err["msg"]} for err in e.errors()]
            raise ToolValidationError(self.name.value, f"invalid arguments ({len(errors)} errors)", errors) from e

    async def invoke(self, args: Mapping[str, Any], context: SessionContext) -> ToolResult:
        """Validate then run. Nothing runs if validation fails."""
        params = self.validate(args)
        return await self.handler(params, context)


class ToolRegistry:
    """Fixed mapping from tool name to descriptor."""

    def __init__(self):
        self._tools: Dict[ToolName, ToolDescriptor] = {}

    def register(self, descriptor: ToolDescriptor) -> None:
        if descriptor.name in self._tools:
            raise ValueError(f"Tool already registered: {descriptor.name.value}")
        self._tools[descriptor.name] = descriptor
        logger.debug(f"[Registry] Registered {descriptor.name.value}")

    def get(self, name: ToolName | str) -> ToolDescriptor:
        try:
            return self._tools[ToolName(name)]
        except (KeyError, ValueError) as e:
            raise ToolNotFoundError(getattr(name, "value", name)) from e

    def names(self) -> List[str]:
        return [name.value for name in self._tools]

    def assert_complete(self) -> None:
        """Every ToolName must have a descriptor."""
        missing = set(ToolName) - set(self._tools)
        if missing:
            raise RuntimeError(f"Tools not registered: {sorted(m.value for m in missing)}")

    def __contains__(self, name: object) -> bool:
        try:
            return ToolName(name) in self._tools
        except ValueError:
            return False

    def __iter__(self) -> Iterator[ToolDescriptor]:
        return iter(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)
