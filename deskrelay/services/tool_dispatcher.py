"""Execute the tool calls an assistant run asks for mid-execution.

Calls in one batch are independent: every call produces an output entry,
either the handler's result or an error description, and the whole batch is
submitted back to the run together.
"""

import asyncio
import inspect
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Type

from pydantic import BaseModel
from pydantic import ValidationError as ArgsValidationError

from deskrelay.logging_config import get_logger
from deskrelay.services.assistant.base import ToolCall

logger = get_logger("tool_dispatcher")


@dataclass
class ToolContext:
    user_id: str
    conversation_id: Optional[str] = None
    customer_phone: Optional[str] = None
    run_id: Optional[str] = None


@dataclass
class ToolSpec:
    name: str
    description: str
    args_model: Type[BaseModel]
    handler: Callable[[BaseModel, ToolContext], Any]


@dataclass
class ToolInvocation:
    tool_call_id: str
    name: str
    run_id: str
    args: Dict[str, Any] = field(default_factory=dict)
    result: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def as_output(self) -> dict:
        if self.ok:
            body = {"success": True, "result": self.result}
        else:
            body = {"success": False, "error": self.error}
        return {"tool_call_id": self.tool_call_id, "output": json.dumps(body, ensure_ascii=False, default=str)}


class ToolRegistry:
    def __init__(self):
        self._tools: Dict[str, ToolSpec] = {}

    def register(self, spec: ToolSpec) -> None:
        if spec.name in self._tools:
            raise ValueError(f"Tool already registered: {spec.name}")
        self._tools[spec.name] = spec

    def get(self, name: str) -> Optional[ToolSpec]:
        return self._tools.get(name)

    def names(self) -> List[str]:
        return sorted(self._tools.keys())

    def definitions(self) -> List[dict]:
        """Function-tool definitions in the assistant's tool format."""
        return [
            {
                "type": "function",
                "function": {
                    "name": spec.name,
                    "description": spec.description,
                    "parameters": spec.args_model.model_json_schema(),
                },
            }
            for spec in self._tools.values()
        ]


def _describe_validation_error(exc: ArgsValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ())) or "arguments"
        problems.append(f"{location}: {error.get('msg')}")
    return "Invalid arguments: " + "; ".join(problems)


class ToolDispatcher:
    def __init__(self, registry: ToolRegistry, timeout_seconds: float = 20.0):
        self.registry = registry
        self.timeout_seconds = timeout_seconds

    async def dispatch(self, run_id: str, calls: List[ToolCall], context: ToolContext) -> List[ToolInvocation]:
        """Run all calls concurrently; results keep the order of `calls`."""
        if not calls:
            return []
        invocations = await asyncio.gather(*(self._invoke(run_id, call, context) for call in calls))
        failed = [inv.name for inv in invocations if not inv.ok]
        logger.info(
            "Tool batch executed",
            extra={
                "context": {
                    "run_id": run_id,
                    "user_id": context.user_id,
                    "calls": len(invocations),
                    "failed": failed,
                }
            },
        )
        return list(invocations)

    async def _invoke(self, run_id: str, call: ToolCall, context: ToolContext) -> ToolInvocation:
        invocation = ToolInvocation(tool_call_id=call.id, name=call.name, run_id=run_id)

        try:
            raw_args = json.loads(call.arguments or "{}")
        except json.JSONDecodeError:
            invocation.error = "Arguments are not valid JSON"
            return invocation
        if not isinstance(raw_args, dict):
            invocation.error = "Arguments must be a JSON object"
            return invocation
        invocation.args = raw_args

        spec = self.registry.get(call.name)
        if spec is None:
            invocation.error = f"Unknown tool: {call.name}"
            return invocation

        try:
            args = spec.args_model.model_validate(raw_args)
        except ArgsValidationError as e:
            invocation.error = _describe_validation_error(e)
            return invocation

        try:
            if inspect.iscoroutinefunction(spec.handler):
                pending = spec.handler(args, context)
            else:
                pending = asyncio.to_thread(spec.handler, args, context)
            invocation.result = await asyncio.wait_for(pending, timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            invocation.error = f"Tool timed out after {self.timeout_seconds}s"
        except Exception as e:
            logger.error(f"Tool {call.name} failed: {e}", exc_info=True)
            invocation.error = f"Tool failed: {e}"
        return invocation
