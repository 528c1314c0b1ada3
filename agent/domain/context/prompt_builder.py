"""
Composes model input from a processed turn state.

System sections are ``str.format`` templates. Placeholders resolve against
the turn basics (``input``, ``actor_id``, ``session_id``) and the manager
data keys selected with ``with_manager_data``; anything unselected or absent
renders as an empty string.
"""

from typing import Any, Callable, Dict, List, Optional, Tuple
from datetime import datetime, timezone

import structlog
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_core.tools import BaseTool

from domain.errors import ValidationError
from domain.models.memory import Fragment
from domain.models.turn_state import State
from domain.tool.tool_registry import Toolkit

logger = structlog.get_logger(__name__)

Formatter = Callable[[Any], str]

_EARLIEST = datetime.min.replace(tzinfo=timezone.utc)


class _TemplateValues(dict):
    def __missing__(self, key: str) -> str:
        return ""


def format_fragments(fragments: List[Fragment]) -> str:
    """One line per fragment, oldest first"""

    ordered = sorted(fragments, key=lambda f: f.created_at or _EARLIEST)
    return "\n".join(f"[{f.actor_id}] {f.content}" for f in ordered)


def format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, list):
        if value and all(isinstance(item, Fragment) for item in value):
            return format_fragments(value)
        return "\n".join(format_value(item) for item in value)
    if isinstance(value, Fragment):
        return value.content
    return str(value)


class PromptBuilder:
    """Builds the message list for one model call"""

    def __init__(self, state: State, assistant_id: Optional[str] = None):
        self.state = state
        self.assistant_id = assistant_id
        self._sections: List[Tuple[str, str, Optional[str]]] = []
        self._data_keys: List[str] = []
        self._formatters: Dict[str, Formatter] = {}
        self._toolkits: List[Toolkit] = []

    def add_system_section(self, template: str) -> "PromptBuilder":
        self._sections.append(("system", template, None))
        return self

    def add_user_section(self, content: str, name: Optional[str] = None) -> "PromptBuilder":
        self._sections.append(("user", content, name))
        return self

    def add_assistant_section(self, content: str) -> "PromptBuilder":
        self._sections.append(("assistant", content, None))
        return self

    def add_recent_interactions(self) -> "PromptBuilder":
        """Replay the session's recent interactions, oldest first"""

        for fragment in reversed(self.state.recent_interactions):
            if self._is_assistant(fragment):
                self.add_assistant_section(fragment.content)
            else:
                self.add_user_section(fragment.content)
        return self

    def with_manager_data(self, *keys: str) -> "PromptBuilder":
        for key in keys:
            if key not in self._data_keys:
                self._data_keys.append(key)
        return self

    def with_formatter(self, key: str, formatter: Formatter) -> "PromptBuilder":
        self._formatters[key] = formatter
        return self

    def with_toolkit(self, toolkit: Toolkit) -> "PromptBuilder":
        self._toolkits.append(toolkit)
        return self

    def get_tools(self) -> List[BaseTool]:
        tools: List[BaseTool] = []
        for toolkit in self._toolkits:
            tools.extend(toolkit.tools)
        return tools

    def template_values(self) -> Dict[str, str]:
        values = {
            "input": self.state.input,
            "actor_id": self.state.actor_id,
            "session_id": self.state.session_id,
        }
        for key in self._data_keys:
            value = self.state.get_data(key)
            formatter = self._formatters.get(key, format_value)
            values[key] = formatter(value)
        return values

    def compose(self) -> List[BaseMessage]:
        """Render every section into langchain messages, in insertion order"""

        values = _TemplateValues(self.template_values())
        messages: List[BaseMessage] = []

        for role, content, name in self._sections:
            if role == "system":
                try:
                    rendered = content.format_map(values)
                except (ValueError, IndexError, AttributeError) as e:
                    raise ValidationError(f"invalid system template: {e}") from e
                messages.append(SystemMessage(content=rendered))
            elif role == "assistant":
                messages.append(AIMessage(content=content))
            elif name:
                messages.append(HumanMessage(content=content, name=name))
            else:
                messages.append(HumanMessage(content=content))

        logger.debug("Prompt composed", turn_id=self.state.id, messages=len(messages),
                     data_keys=self._data_keys)
        return messages

    def _is_assistant(self, fragment: Fragment) -> bool:
        if self.assistant_id is not None:
            return fragment.actor_id == self.assistant_id
        return fragment.metadata.get("role") == "assistant"
