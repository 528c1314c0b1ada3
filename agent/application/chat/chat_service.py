from typing import Callable, List, Optional, Sequence

import structlog
from langchain_core.messages import BaseMessage
from pydantic import BaseModel, Field

from domain.context.prompt_builder import PromptBuilder
from domain.errors import ConfigurationError
from domain.models.memory import Fragment
from domain.models.turn_state import State
from domain.orchestration.core.engine import Engine, PostProcessResult
from domain.tool.tool_registry import Toolkit, ToolRegistry
from infrastructure.llm.llm_client import ModelType

logger = structlog.get_logger(__name__)

DEFAULT_SYSTEM_TEMPLATE = """You are {assistant_name}, taking part in an ongoing conversation.

Respond naturally and concisely, taking the conversation so far into account.
"""

PromptHook = Callable[[PromptBuilder, State], None]


class ChatTurn(BaseModel):
    """Result of one complete turn"""
    turn_id: str
    session_id: str
    input_fragment: Optional[Fragment] = None
    response: Fragment
    warnings: List[str] = Field(default_factory=list)


class ChatService:
    """Runs complete turns: state, pipeline, prompt, model call, post-processing.

    Tools come from ``tool_registry``; ``toolkit_names`` limits a service to
    some of its toolkits. ``prompt_hooks`` let the embedding application add
    manager data and sections to the prompt before it is composed.
    """

    def __init__(
        self,
        engine: Engine,
        system_template: str = DEFAULT_SYSTEM_TEMPLATE,
        toolkits: Sequence[Toolkit] = (),
        prompt_hooks: Sequence[PromptHook] = (),
        model_type: ModelType = ModelType.DEFAULT,
        tool_registry: Optional[ToolRegistry] = None,
        toolkit_names: Sequence[str] = (),
    ):
        self.engine = engine
        self.system_template = system_template
        self.tool_registry = tool_registry if tool_registry is not None else ToolRegistry()
        for toolkit in toolkits:
            self.tool_registry.register_toolkit(toolkit)
        self.toolkit_names = tuple(toolkit_names)
        self.prompt_hooks = list(prompt_hooks)
        self.model_type = model_type

        # Reject unknown toolkit names at construction
        self.active_toolkits()

    def active_toolkits(self) -> List[Toolkit]:
        names = self.toolkit_names or tuple(self.tool_registry.toolkits)
        toolkits = []
        for name in names:
            toolkit = self.tool_registry.get_toolkit(name)
            if toolkit is None:
                raise ConfigurationError(f"unknown toolkit {name}")
            toolkits.append(toolkit)
        return toolkits

    def build_prompt(self, state: State) -> PromptBuilder:
        builder = PromptBuilder(state, assistant_id=self.engine.assistant_id)
        builder.add_system_section(
            self.system_template.replace("{assistant_name}", self.engine.config.assistant_name or self.engine.assistant_id)
        )
        builder.add_recent_interactions()
        builder.add_user_section(state.input)
        for toolkit in self.active_toolkits():
            builder.with_toolkit(toolkit)
        for hook in self.prompt_hooks:
            hook(builder, state)
        return builder

    async def chat(self, actor_id: str, session_id: str, message: str) -> ChatTurn:
        """Run one turn and return the stored response"""

        state = await self.engine.new_state(actor_id, session_id, message)
        await self.engine.process(state)

        builder = self.build_prompt(state)
        messages: List[BaseMessage] = builder.compose()

        response = await self.engine.generate_response(
            messages,
            session_id,
            tools=builder.get_tools(),
            model_type=self.model_type,
            state=state,
        )
        result: PostProcessResult = await self.engine.post_process(response, state)

        if result.errors:
            logger.warning("Turn completed with post-processing errors",
                           turn_id=state.id,
                           managers=[e.manager_id for e in result.errors])

        return ChatTurn(
            turn_id=state.id,
            session_id=session_id,
            input_fragment=result.input_fragment,
            response=result.response,
            warnings=[str(e) for e in result.errors],
        )
