from pathlib import Path
from typing import Any, Dict, List

import yaml
from pydantic import BaseModel, Field, ValidationError


class ToolSpec(BaseModel):
    name: str
    title: str
    description: str
    input_schema: Dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})

    def to_mcp(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "title": self.title,
            "description": self.description,
            "inputSchema": self.input_schema,
        }


class ToolCatalog:
    """
    Loads and validates tool definitions from tools.yaml.
    """

    def __init__(self, tools_path: str) -> None:
        self._path = Path(tools_path)
        if not self._path.exists():
            raise FileNotFoundError(f"tools.yaml not found at {tools_path}")
        self._tools: Dict[str, ToolSpec] = {}
        self._load()

    def _load(self) -> None:
        data = yaml.safe_load(self._path.read_text()) or {}
        entries = data.get("tools") or {}
        tools: Dict[str, ToolSpec] = {}
        for name, cfg in entries.items():
            try:
                spec = ToolSpec(name=name, **(cfg or {}))
            except (TypeError, ValidationError) as e:
                raise ValueError(f"Invalid tool definition for {name}: {e}") from e
            tools[spec.name] = spec
        self._tools = tools

    def get(self, name: str) -> ToolSpec:
        if name not in self._tools:
            raise KeyError(f"Tool '{name}' not found in catalog")
        return self._tools[name]

    def list_tools(self) -> List[Dict[str, Any]]:
        return [spec.to_mcp() for spec in self._tools.values()]

    def __contains__(self, name: str) -> bool:
        return name in self._tools
