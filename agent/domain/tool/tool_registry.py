from typing import Dict, List, Optional, Sequence

import structlog
from langchain_core.tools import BaseTool

from domain.errors import ConfigurationError

logger = structlog.get_logger(__name__)


class Toolkit:
    """Named group of tools offered to the model together"""

    def __init__(self, name: str, tools: Sequence[BaseTool] = (), description: str = ""):
        if not name:
            raise ConfigurationError("toolkit requires a name")

        self.name = name
        self.description = description
        self.tools: List[BaseTool] = []
        for tool in tools:
            self.add_tool(tool)

    def add_tool(self, tool: BaseTool) -> None:
        if self.get_tool(tool.name) is not None:
            raise ConfigurationError(f"toolkit {self.name} already has a tool named {tool.name}")
        self.tools.append(tool)

    def get_tool(self, tool_name: str) -> Optional[BaseTool]:
        for tool in self.tools:
            if tool.name == tool_name:
                return tool
        return None

    def __len__(self) -> int:
        return len(self.tools)


class ToolRegistry:
    """Registry for managing available toolkits"""

    def __init__(self):
        self.toolkits: Dict[str, Toolkit] = {}

    def register_toolkit(self, toolkit: Toolkit) -> None:
        """Register a toolkit, replacing one with the same name"""

        if toolkit.name in self.toolkits:
            logger.warning("Replacing registered toolkit", toolkit=toolkit.name)
        self.toolkits[toolkit.name] = toolkit

    def get_toolkit(self, name: str) -> Optional[Toolkit]:
        return self.toolkits.get(name)

    def get_tools(self, *toolkit_names: str) -> List[BaseTool]:
        """Tools of the named toolkits, or of every toolkit when none are named"""

        names = toolkit_names or tuple(self.toolkits)
        tools: List[BaseTool] = []
        for name in names:
            toolkit = self.toolkits.get(name)
            if toolkit is None:
                raise ConfigurationError(f"unknown toolkit {name}")
            tools.extend(toolkit.tools)
        return tools

    def find_tool(self, tool_name: str) -> Optional[BaseTool]:
        for toolkit in self.toolkits.values():
            tool = toolkit.get_tool(tool_name)
            if tool is not None:
                return tool
        return None

    def search_tools(self, query: str) -> List[BaseTool]:
        """Search tools by name or description"""

        query_lower = query.lower()
        matching_tools = []

        for toolkit in self.toolkits.values():
            for tool in toolkit.tools:
                if query_lower in tool.name.lower() or query_lower in (tool.description or "").lower():
                    matching_tools.append(tool)

        return matching_tools
