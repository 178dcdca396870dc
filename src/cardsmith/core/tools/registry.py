"""
Tool Registry

Maps capability names to tool instances. A registry is constructed
explicitly and handed to the engine, so parallel sessions (and tests) can
run with different tool sets. Registration is open at runtime for plugin
capabilities beyond the built-in ``Capability`` names.
"""

from __future__ import annotations

from typing import Any, Iterable, Iterator

import structlog

from cardsmith.core.domain.errors import UnknownCapabilityError
from cardsmith.core.tools.base import Capability, Tool


def _key(name: str | Capability) -> str:
    return name.value if isinstance(name, Capability) else str(name)


class ToolRegistry:
    def __init__(self, tools: Iterable[Tool] = ()):
        self._tools: dict[str, Tool] = {}
        self.logger = structlog.get_logger().bind(component="tool_registry")
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            self.logger.warning("tool_replaced", tool=tool.name)
        self._tools[tool.name] = tool
        self.logger.debug("tool_registered", tool=tool.name)

    def unregister(self, name: str | Capability) -> bool:
        removed = self._tools.pop(_key(name), None)
        if removed is not None:
            self.logger.debug("tool_unregistered", tool=removed.name)
        return removed is not None

    def resolve(self, name: str | Capability) -> Tool:
        """Return the tool for a capability name.

        Raises:
            UnknownCapabilityError: If nothing is registered under the name
        """
        tool = self._tools.get(_key(name))
        if tool is None:
            raise UnknownCapabilityError(_key(name), list(self._tools))
        return tool

    def canonical_name(self, name: str) -> str | None:
        """Registered name matching ``name`` case-insensitively, if any."""
        key = name.strip()
        if key in self._tools:
            return key
        lowered = key.lower()
        return next((n for n in self._tools if n.lower() == lowered), None)

    def get(self, name: str | Capability) -> Tool | None:
        return self._tools.get(_key(name))

    def names(self) -> list[str]:
        return list(self._tools)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, (str, Capability)) and _key(name) in self._tools

    def __iter__(self) -> Iterator[Tool]:
        return iter(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)

    def tools_info(self) -> list[dict[str, Any]]:
        """Name, description and parameters of every registered tool."""
        return [
            {
                "name": tool.name,
                "description": tool.description,
                "parameters": [p.to_dict() for p in tool.parameters],
                "schema": tool.parameters_schema,
            }
            for tool in self._tools.values()
        ]

    def describe_for_prompt(self, exclude: Iterable[str] = ()) -> str:
        """Plain-text tool catalogue for planner prompts."""
        skipped = {_key(n) for n in exclude}
        blocks = []
        for tool in self._tools.values():
            if tool.name in skipped:
                continue
            lines = [f"- {tool.name}: {tool.description}"]
            for param in tool.parameters:
                flag = "required" if param.required else "optional"
                options = f" one of {param.options}" if param.options else ""
                lines.append(
                    f"    * {param.name} ({param.type}, {flag}){options}: {param.description}"
                )
            blocks.append("\n".join(lines))
        return "\n".join(blocks) if blocks else "(no tools available)"

    def stats(self) -> dict[str, Any]:
        builtin = {c.value for c in Capability}
        return {
            "total_tools": len(self._tools),
            "builtin": sorted(n for n in self._tools if n in builtin),
            "plugins": sorted(n for n in self._tools if n not in builtin),
        }
