"""Tool discovery, registration and dispatch for graph runs.

The registry is the only seam between the orchestrator and the outside
world: every node is executed by looking up a tool by name and awaiting
``invoke(name, args, ctx)``.

A tool executor is any callable ``(args: dict, ctx: ExecContext) -> Any``,
sync or async. Sync executors run in a worker thread so a blocking tool
does not stall the other nodes of its level.
"""

import asyncio
import importlib.util
import inspect
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from taskgraph.errors import TaskGraphError, ToolExecutionError, ToolNotFoundError
from taskgraph.runner.context import ExecContext

logger = logging.getLogger(__name__)

ToolExecutor = Callable[[dict[str, Any], ExecContext], Any]

_JSON_TYPES = {
    int: "integer",
    float: "number",
    bool: "boolean",
    dict: "object",
    list: "array",
    str: "string",
}


@dataclass
class ToolSpec:
    """Description of a tool, for listing and for hosts that expose tools to an LLM."""

    name: str
    description: str = ""
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )


@dataclass
class RegisteredTool:
    """A tool with its executor function."""

    tool: ToolSpec
    executor: ToolExecutor


class ToolRegistry:
    """
    Name-keyed tool registry.

    Tool Sources:
    1. Manually registered executors (``register`` / ``register_function``)
    2. A plain mapping of name -> callable (``from_mapping``)
    3. A tools.py module (``discover_from_module``)

    Example:
        registry = ToolRegistry()

        async def search(args, ctx):
            ctx.memory.put_doc("query", args["query"])
            return f"results for {args['query']}"

        registry.register("web.search", search, description="Search the web")
        result = await registry.invoke("web.search", {"query": "x"}, ctx)
    """

    def __init__(self) -> None:
        self._tools: dict[str, RegisteredTool] = {}

    @classmethod
    def from_mapping(cls, tools: Mapping[str, ToolExecutor]) -> "ToolRegistry":
        """Build a registry from ``{name: executor}``."""
        registry = cls()
        for name, executor in tools.items():
            registry.register(name, executor)
        return registry

    def register(
        self,
        name: str,
        executor: ToolExecutor,
        description: str = "",
        parameters: dict[str, Any] | None = None,
    ) -> None:
        """
        Register a single tool with its executor.

        Args:
            name: Tool name nodes resolve to
            executor: Callable taking (args, ctx)
            description: Human-readable description
            parameters: Optional JSON schema of the args
        """
        if not name:
            raise ValueError("Tool name cannot be empty")
        if name in self._tools:
            logger.debug(f"Replacing registered tool '{name}'")
        spec = ToolSpec(name=name, description=description or (executor.__doc__ or "").strip())
        if parameters is not None:
            spec.parameters = parameters
        self._tools[name] = RegisteredTool(tool=spec, executor=executor)

    def register_function(
        self,
        func: Callable,
        name: str | None = None,
        description: str | None = None,
    ) -> None:
        """
        Register a keyword-argument function as a tool.

        Args are passed as keyword arguments; a parameter named ``ctx``
        receives the ExecContext. Unknown args are dropped.

        Args:
            func: Function to register
            name: Tool name (defaults to function name)
            description: Tool description (defaults to docstring)
        """
        tool_name = name or func.__name__
        tool_desc = description or func.__doc__ or f"Execute {tool_name}"

        sig = inspect.signature(func)
        properties: dict[str, Any] = {}
        required: list[str] = []
        accepts_ctx = False

        for param_name, param in sig.parameters.items():
            if param_name in ("self", "cls"):
                continue
            if param_name == "ctx":
                accepts_ctx = True
                continue
            param_type = "string"
            if param.annotation != inspect.Parameter.empty:
                param_type = _JSON_TYPES.get(param.annotation, "string")
            properties[param_name] = {"type": param_type}
            if param.default == inspect.Parameter.empty:
                required.append(param_name)

        is_async = inspect.iscoroutinefunction(func)

        def _call_kwargs(args: dict[str, Any], ctx: ExecContext) -> dict[str, Any]:
            kwargs = {k: v for k, v in args.items() if k in properties}
            if accepts_ctx:
                kwargs["ctx"] = ctx
            return kwargs

        if is_async:

            async def executor(args: dict[str, Any], ctx: ExecContext) -> Any:
                return await func(**_call_kwargs(args, ctx))

        else:

            def executor(args: dict[str, Any], ctx: ExecContext) -> Any:
                return func(**_call_kwargs(args, ctx))

        self.register(
            tool_name,
            executor,
            description=tool_desc.strip(),
            parameters={"type": "object", "properties": properties, "required": required},
        )

    def discover_from_module(self, module_path: Path) -> int:
        """
        Load tools from a Python module file.

        Looks for:
        - TOOLS: dict[str, Callable] - name -> executor(args, ctx)
        - Functions decorated with @tool

        Args:
            module_path: Path to tools.py file

        Returns:
            Number of tools discovered
        """
        module_path = Path(module_path)
        if not module_path.exists():
            return 0

        spec = importlib.util.spec_from_file_location("taskgraph_user_tools", module_path)
        if spec is None or spec.loader is None:
            return 0

        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)

        count = 0

        if hasattr(module, "TOOLS"):
            for name, executor in module.TOOLS.items():
                self.register(name, executor)
                count += 1

        for attr in dir(module):
            obj = getattr(module, attr)
            if callable(obj) and hasattr(obj, "_tool_metadata"):
                metadata = obj._tool_metadata
                self.register_function(
                    obj,
                    name=metadata.get("name", attr),
                    description=metadata.get("description"),
                )
                count += 1

        logger.info(f"Discovered {count} tools from {module_path}")
        return count

    def get_tools(self) -> dict[str, ToolSpec]:
        """Get all registered ToolSpec objects."""
        return {name: rt.tool for name, rt in self._tools.items()}

    def get_registered_names(self) -> list[str]:
        """Get list of registered tool names."""
        return list(self._tools.keys())

    def has_tool(self, name: str) -> bool:
        """Check if a tool is registered."""
        return name in self._tools

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    async def invoke(self, name: str, args: dict[str, Any], ctx: ExecContext) -> Any:
        """
        Call a tool by name.

        Raises:
            ToolNotFoundError: no tool registered under ``name``
            ToolExecutionError: the tool raised
            asyncio.CancelledError: propagated untouched
        """
        registered = self._tools.get(name)
        if registered is None:
            raise ToolNotFoundError(name, self.get_registered_names())

        executor = registered.executor
        try:
            if inspect.iscoroutinefunction(executor):
                result = await executor(args, ctx)
            else:
                result = await asyncio.to_thread(executor, args, ctx)
                if inspect.isawaitable(result):
                    result = await result
        except asyncio.CancelledError:
            raise
        except TaskGraphError:
            raise
        except Exception as e:
            raise ToolExecutionError(name, str(e) or type(e).__name__) from e
        return result


def tool(
    description: str | None = None,
    name: str | None = None,
) -> Callable:
    """
    Decorator to mark a function as a tool for ``discover_from_module``.

    Usage:
        @tool(description="Upper-case the input text")
        def text_upper(text: str) -> str:
            return text.upper()
    """

    def decorator(func: Callable) -> Callable:
        func._tool_metadata = {
            "name": name or func.__name__,
            "description": description or func.__doc__,
        }
        return func

    return decorator
