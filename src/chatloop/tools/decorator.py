"""Tool definitions and the @tool decorator.

A ``Tool`` is one of three kinds, recorded in ``side``:

* ``definition`` - name, description and schemas only;
* ``server`` - has an ``execute`` callable the engine runs itself;
* ``client`` - executed by the caller; any ``execute`` it carries runs in
  the client, never in the engine.
"""

from __future__ import annotations

import inspect
import types
import typing
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Literal, Union, get_args, get_origin

from pydantic import BaseModel

ToolSide = Literal["definition", "server", "client"]
ToolExecute = Callable[[dict[str, Any]], Union[Any, Awaitable[Any]]]
Schema = Union[dict[str, Any], type[BaseModel]]


def _schema_to_json(schema: Schema | None) -> dict[str, Any] | None:
    if schema is None:
        return None
    if isinstance(schema, type) and issubclass(schema, BaseModel):
        return schema.model_json_schema()
    return dict(schema)


@dataclass(frozen=True)
class Tool:
    name: str
    description: str = ""
    input_schema: Schema | None = None
    output_schema: Schema | None = None
    needs_approval: bool = False
    execute: ToolExecute | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    side: ToolSide = "definition"

    @property
    def is_server_executable(self) -> bool:
        """True when the engine itself may run this tool."""
        return self.execute is not None and self.side != "client"

    def server(self, execute: ToolExecute) -> Tool:
        """Return a server-side variant that runs ``execute``."""
        return replace(self, side="server", execute=execute)

    def client(self, execute: ToolExecute | None = None) -> Tool:
        """Return a client-side variant, optionally with a client executor."""
        return replace(self, side="client", execute=execute)

    def parameters_schema(self) -> dict[str, Any]:
        return _schema_to_json(self.input_schema) or {"type": "object", "properties": {}}

    def to_schema(self) -> dict[str, Any]:
        """OpenAI-compatible function schema."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters_schema(),
            },
        }

    async def run(self, arguments: dict[str, Any]) -> Any:
        """Invoke ``execute`` with decoded arguments, awaiting if needed."""
        if self.execute is None:
            raise RuntimeError(f"Tool {self.name} has no execute function")
        if isinstance(self.input_schema, type) and issubclass(self.input_schema, BaseModel):
            arguments = self.input_schema.model_validate(arguments).model_dump()
        result = self.execute(arguments)
        if inspect.isawaitable(result):
            result = await result
        return result


def tool_definition(
    name: str,
    description: str = "",
    input_schema: Schema | None = None,
    output_schema: Schema | None = None,
    needs_approval: bool = False,
    metadata: dict[str, Any] | None = None,
) -> Tool:
    """Declare a tool without binding it to a side.

    Use ``.server(fn)`` or ``.client(fn)`` on the result to get an
    executable variant.
    """
    return Tool(
        name=name,
        description=description,
        input_schema=input_schema,
        output_schema=output_schema,
        needs_approval=needs_approval,
        metadata=metadata or {},
    )


def _python_type_to_json(annotation: Any) -> dict:
    """Convert a Python type annotation to a JSON Schema type."""
    if annotation is inspect.Parameter.empty or annotation is Any:
        return {"type": "string"}

    origin = get_origin(annotation)
    args = get_args(annotation)

    if origin is list:
        items = _python_type_to_json(args[0]) if args else {"type": "string"}
        return {"type": "array", "items": items}

    if origin is dict:
        return {"type": "object"}

    # Optional[X] and X | None
    if origin is types.UnionType or origin is typing.Union:
        non_none = [a for a in args if a is not type(None)]
        if len(non_none) == 1:
            return _python_type_to_json(non_none[0])
        return {"type": "string"}

    type_map = {
        str: {"type": "string"},
        int: {"type": "integer"},
        float: {"type": "number"},
        bool: {"type": "boolean"},
    }
    return dict(type_map.get(annotation, {"type": "string"}))


def _parse_param_docs(docstring: str) -> dict[str, str]:
    """Extract parameter descriptions from a Google-style Args section."""
    result: dict[str, str] = {}
    in_args = False
    current_param = None

    for line in docstring.split("\n"):
        stripped = line.strip()
        if stripped.lower().startswith("args:"):
            in_args = True
            continue
        if not in_args:
            continue
        # Next section header ends the Args block
        if stripped.endswith(":") and not line.startswith((" ", "\t")):
            break
        if ":" in stripped:
            param_name, desc = stripped.split(":", 1)
            param_name = param_name.strip().lstrip("-").strip()
            if param_name and " " not in param_name:
                current_param = param_name
                result[current_param] = desc.strip()
                continue
        if current_param and stripped:
            result[current_param] += " " + stripped

    return result


def _build_input_schema(func: Callable, doc: str) -> dict:
    """Build a JSON schema for the function's keyword arguments."""
    sig = inspect.signature(func)
    try:
        type_hints = typing.get_type_hints(func)
    except NameError:
        # Unresolvable string annotations fall back to the raw signature
        type_hints = {}
    param_docs = _parse_param_docs(doc)

    properties: dict = {}
    required: list[str] = []

    for param_name, param in sig.parameters.items():
        if param_name in ("self", "cls"):
            continue

        prop = _python_type_to_json(type_hints.get(param_name, param.annotation))
        if param_name in param_docs:
            prop["description"] = param_docs[param_name]
        properties[param_name] = prop

        if param.default is inspect.Parameter.empty:
            required.append(param_name)

    return {"type": "object", "properties": properties, "required": required}


def tool(
    name: str | None = None,
    description: str | None = None,
    needs_approval: bool = False,
) -> Callable:
    """Decorator that turns a function into a server tool.

    The input schema is derived from the signature; keyword arguments are
    passed straight through from the decoded tool-call arguments.

    Args:
        name: Tool name (defaults to function name).
        description: Tool description (defaults to first line of docstring).
        needs_approval: Gate execution behind a user approval.
    """
    def decorator(func: Callable) -> Callable:
        tool_name = name or func.__name__
        doc = inspect.getdoc(func) or ""
        tool_desc = description or doc.split("\n")[0] or tool_name

        def execute(arguments: dict[str, Any]) -> Any:
            return func(**arguments)

        tool_obj = Tool(
            name=tool_name,
            description=tool_desc,
            input_schema=_build_input_schema(func, doc),
            needs_approval=needs_approval,
            execute=execute,
            side="server",
        )
        func.tool = tool_obj
        return func

    return decorator
