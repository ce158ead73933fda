"""Tool registry for server-invoked capabilities.

Maps capability names to async handlers. Invocation never raises: every
outcome is a ``ToolResult`` (``ToolOk`` or ``ToolErr``) so a pending call on
the remote endpoint always gets an answer.
"""

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from realtime_chat.errors import ToolInvocationFailed
from realtime_chat.protocol import ToolDefinition

logger = logging.getLogger(__name__)

ToolHandler = Callable[[dict[str, Any]], Awaitable[Any]]


@dataclass(frozen=True)
class ToolOk:
    """Successful tool outcome."""

    value: Any

    def to_output(self) -> str:
        """Serialize for a function_call_output item."""
        return json.dumps(self.value if self.value is not None else {"ok": True})


@dataclass(frozen=True)
class ToolErr:
    """Failed tool outcome, reported back instead of raised.

    Attributes:
        kind: Failure class (unknown_tool, invalid_arguments, handler_failed
            or unserializable_result)
        message: Human-readable description
    """

    kind: str
    message: str

    def to_output(self) -> str:
        """Serialize for a function_call_output item."""
        return json.dumps({"success": False, "error": self.kind, "message": self.message})


ToolResult = ToolOk | ToolErr


@dataclass(frozen=True)
class RegisteredTool:
    """Registry entry: handler plus optional manifest declaration."""

    name: str
    handler: ToolHandler
    description: str | None = None
    parameters: dict[str, Any] | None = None

    @property
    def declared(self) -> bool:
        """Whether the tool is announced to the remote endpoint."""
        return self.description is not None

    def definition(self) -> ToolDefinition:
        """Build the manifest entry for this tool."""
        if self.description is None:
            raise ValueError(f"Tool '{self.name}' has no description to declare")
        if self.parameters is None:
            return ToolDefinition(name=self.name, description=self.description)
        return ToolDefinition(
            name=self.name, description=self.description, parameters=self.parameters
        )


def parse_arguments(raw: Any) -> dict[str, Any]:
    """Decode tool-call arguments.

    Args:
        raw: JSON object text, an already-decoded object, or None

    Returns:
        Argument mapping

    Raises:
        ValueError: If the arguments are not a JSON object
    """
    if raw is None or raw == "":
        return {}
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, str):
        raise ValueError(f"Tool arguments must be a JSON object, got {type(raw).__name__}")
    decoded = json.loads(raw)
    if not isinstance(decoded, dict):
        raise ValueError(f"Tool arguments must be a JSON object, got {type(decoded).__name__}")
    return decoded


class ToolRegistry:
    """Registry of named async capabilities.

    Registering under an existing name replaces the previous handler.
    """

    def __init__(self) -> None:
        self._tools: dict[str, RegisteredTool] = {}

    def register(
        self,
        name: str,
        handler: ToolHandler,
        description: str | None = None,
        parameters: dict[str, Any] | None = None,
    ) -> RegisteredTool:
        """Register (or replace) a capability.

        Args:
            name: Unique capability name
            handler: Async callable receiving the decoded arguments
            description: Natural-language description; tools without one are
                local-only and left out of the manifest
            parameters: JSON-schema parameter declaration

        Returns:
            The registry entry
        """
        if not name:
            raise ValueError("Tool name must not be empty")
        tool = RegisteredTool(
            name=name, handler=handler, description=description, parameters=parameters
        )
        replaced = name in self._tools
        self._tools[name] = tool
        logger.info(
            "Tool registered",
            extra={"tool": name, "declared": tool.declared, "replaced": replaced},
        )
        return tool

    def unregister(self, name: str) -> None:
        """Remove a capability if present."""
        self._tools.pop(name, None)

    def get(self, name: str) -> RegisteredTool | None:
        """Look up a capability by name."""
        return self._tools.get(name)

    def manifest(self) -> list[ToolDefinition]:
        """Manifest entries for every declared capability."""
        return [tool.definition() for tool in self._tools.values() if tool.declared]

    async def invoke(
        self,
        name: str,
        arguments: Any,
        call_id: str | None = None,
    ) -> ToolResult:
        """Invoke a capability and wrap the outcome.

        Args:
            name: Capability name
            arguments: Raw or decoded arguments
            call_id: Protocol call identifier, for logging

        Returns:
            ToolOk with the handler's value, or ToolErr describing the failure
        """
        tool = self._tools.get(name)
        if tool is None:
            return ToolErr(kind="unknown_tool", message=f"No tool named '{name}'")

        try:
            args = parse_arguments(arguments)
        except ValueError as e:
            logger.warning(
                "Invalid tool arguments",
                extra={"tool": name, "call_id": call_id, "error": str(e)},
            )
            return ToolErr(kind="invalid_arguments", message=str(e))

        try:
            value = await tool.handler(args)
        except Exception as e:
            failure = ToolInvocationFailed(name, call_id, e)
            logger.error(
                "Tool invocation failed",
                extra={"tool": name, "call_id": call_id, "error": str(failure)},
            )
            return ToolErr(kind="handler_failed", message=str(failure))

        result = ToolOk(value=value)
        try:
            result.to_output()
        except (TypeError, ValueError) as e:
            logger.error(
                "Tool result is not JSON serializable",
                extra={"tool": name, "call_id": call_id, "error": str(e)},
            )
            return ToolErr(
                kind="unserializable_result",
                message=f"Tool '{name}' returned a value that is not JSON serializable: {e}",
            )

        logger.debug("Tool invocation completed", extra={"tool": name, "call_id": call_id})
        return result

    def __contains__(self, name: object) -> bool:
        """Check whether a capability is registered."""
        return name in self._tools

    def __len__(self) -> int:
        """Return number of registered capabilities."""
        return len(self._tools)
