"""
Thin client over langchain chat and embedding models.

The runtime talks to the model provider only through this class. Retries and
backoff belong to the underlying provider integration; every failure that
reaches this layer is raised as a TransportError.
"""

from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence, Union
from enum import Enum
import asyncio

import structlog
from langchain_core.embeddings import Embeddings
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage
from langchain_core.tools import BaseTool

from domain.errors import ConfigurationError, TransportError

logger = structlog.get_logger(__name__)


class ModelType(str, Enum):
    """Model tiers a caller can ask for"""
    FAST = "fast"
    DEFAULT = "default"
    ADVANCED = "advanced"


def message_text(message: BaseMessage) -> str:
    """Plain text of a message whose content may be a list of parts"""

    content = message.content
    if isinstance(content, str):
        return content

    parts = []
    for part in content:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("type") == "text":
            parts.append(part.get("text", ""))
    return "".join(parts)


class LLMClient:
    """Completion, streaming and embedding calls keyed by model tier"""

    def __init__(
        self,
        models: Mapping[Union[ModelType, str], BaseChatModel],
        embeddings: Optional[Embeddings] = None,
        timeout: Optional[float] = None,
    ):
        self.models: Dict[ModelType, BaseChatModel] = {
            ModelType(key): model for key, model in models.items()
        }
        if ModelType.DEFAULT not in self.models:
            raise ConfigurationError("LLM client requires a default model")

        self.embeddings = embeddings
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Any) -> "LLMClient":
        """Build provider models from ``provider:model`` identifiers"""

        from langchain.chat_models import init_chat_model
        from langchain.embeddings import init_embeddings

        models = {ModelType.DEFAULT: init_chat_model(settings.default_model)}
        if settings.fast_model:
            models[ModelType.FAST] = init_chat_model(settings.fast_model)
        if settings.advanced_model:
            models[ModelType.ADVANCED] = init_chat_model(settings.advanced_model)

        embeddings = init_embeddings(settings.embedding_model) if settings.embedding_model else None
        return cls(models, embeddings=embeddings, timeout=settings.llm_timeout_seconds)

    @property
    def has_embeddings(self) -> bool:
        return self.embeddings is not None

    def get_model(self, model_type: Union[ModelType, str] = ModelType.DEFAULT) -> BaseChatModel:
        """Model for a tier, falling back to the default tier"""
        return self.models.get(ModelType(model_type), self.models[ModelType.DEFAULT])

    async def generate_completion(
        self,
        messages: Sequence[BaseMessage],
        tools: Optional[Sequence[BaseTool]] = None,
        model_type: Union[ModelType, str] = ModelType.DEFAULT,
    ) -> AIMessage:
        """Single completion; tool calls, if any, are left on the returned message"""

        model = self.get_model(model_type)
        if tools:
            try:
                model = model.bind_tools(list(tools))
            except NotImplementedError as e:
                raise ConfigurationError(f"{type(model).__name__} does not support tool calling") from e

        try:
            result = await asyncio.wait_for(model.ainvoke(list(messages)), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            logger.error("Completion timed out", model_type=ModelType(model_type).value, timeout=self.timeout)
            raise TransportError("completion request timed out") from e
        except Exception as e:
            logger.error("Completion failed", model_type=ModelType(model_type).value, error=str(e))
            raise TransportError(f"completion request failed: {e}") from e

        if not isinstance(result, AIMessage):
            result = AIMessage(content=message_text(result))
        return result

    async def generate_streaming_completion(
        self,
        messages: Sequence[BaseMessage],
        model_type: Union[ModelType, str] = ModelType.DEFAULT,
    ) -> AsyncIterator[str]:
        """Yield text chunks as the model produces them"""

        model = self.get_model(model_type)
        try:
            async for chunk in model.astream(list(messages)):
                text = message_text(chunk)
                if text:
                    yield text
        except Exception as e:
            logger.error("Streaming completion failed", model_type=ModelType(model_type).value, error=str(e))
            raise TransportError(f"streaming completion failed: {e}") from e

    async def generate_embeddings(self, text: str) -> List[float]:
        if self.embeddings is None:
            raise ConfigurationError("LLM client has no embeddings model")

        try:
            return await asyncio.wait_for(self.embeddings.aembed_query(text), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise TransportError("embedding request timed out") from e
        except Exception as e:
            logger.error("Embedding failed", error=str(e))
            raise TransportError(f"embedding request failed: {e}") from e
