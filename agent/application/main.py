"""
Service entrypoint.

    uvicorn application.main:create_app_from_env --factory
"""

from typing import Optional, Sequence

import structlog
from fastapi import FastAPI

from application.api.api_server import create_app
from application.chat.chat_service import ChatService
from domain.orchestration.core.engine import Engine, EngineConfig
from domain.orchestration.manager.base_manager import BaseManager
from domain.tool.tool_registry import ToolRegistry
from infrastructure.config.settings import Settings, Stores, build_stores
from infrastructure.llm.llm_client import LLMClient
from infrastructure.observability.logging import setup_logging

logger = structlog.get_logger(__name__)


def build_engine(
    settings: Settings,
    stores: Stores,
    llm_client: LLMClient,
    managers: Sequence[BaseManager] = (),
) -> Engine:
    return Engine(
        EngineConfig(
            assistant_id=settings.assistant_id,
            assistant_name=settings.assistant_name,
            actor_store=stores.actors,
            session_store=stores.sessions,
            interaction_store=stores.interactions,
            llm_client=llm_client,
            managers=list(managers),
            recent_interaction_limit=settings.recent_interaction_limit,
            turn_timeout=settings.turn_timeout_seconds,
        )
    )


def create_app_from_env(
    settings: Optional[Settings] = None,
    tool_registry: Optional[ToolRegistry] = None,
) -> FastAPI:
    """Build the whole service from NOVA_* environment variables"""

    settings = settings or Settings.from_env()
    setup_logging(settings.log_level, settings.log_format, settings.service_name)

    stores = build_stores(settings)
    engine = build_engine(settings, stores, LLMClient.from_settings(settings))

    logger.info("Service configured", assistant_id=settings.assistant_id)
    return create_app(engine, ChatService(engine, tool_registry=tool_registry))
