"""
Wiring of the LLM service, tool registry, session store and engine.
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable

import structlog

from cardsmith.application.settings import CardsmithSettings
from cardsmith.core.domain.engine import EngineEvent, ExecutionEngine, UserInputCallback
from cardsmith.core.interfaces.llm import LLMProviderProtocol
from cardsmith.core.interfaces.search import SearchBackendProtocol
from cardsmith.core.interfaces.state import SessionStoreProtocol
from cardsmith.core.tools.registry import ToolRegistry
from cardsmith.infrastructure.llm.llm_service import LLMService
from cardsmith.infrastructure.persistence.file_session_store import FileSessionStore
from cardsmith.infrastructure.tools.ask_user_tool import AskUserTool
from cardsmith.infrastructure.tools.output_tool import OutputTool
from cardsmith.infrastructure.tools.plan_tool import PlannerTool
from cardsmith.infrastructure.tools.reflect_tool import ReflectTool
from cardsmith.infrastructure.tools.search_tool import SearchTool

logger = structlog.get_logger().bind(component="factory")


def build_llm(settings: CardsmithSettings) -> LLMService:
    config_path = settings.llm_config_path
    if config_path and not Path(config_path).exists():
        logger.debug("llm_config_missing", path=config_path)
        config_path = None
    return LLMService(config_path=config_path, default_config=settings.to_model_config())


def build_registry(
    llm: LLMProviderProtocol,
    search_backend: SearchBackendProtocol | None = None,
) -> ToolRegistry:
    """Registry with the built-in capabilities."""
    registry = ToolRegistry()
    registry.register(PlannerTool(llm, registry))
    registry.register(AskUserTool(llm))
    registry.register(SearchTool(llm, backend=search_backend))
    registry.register(OutputTool(llm))
    registry.register(ReflectTool(registry))
    return registry


def build_store(settings: CardsmithSettings) -> FileSessionStore:
    return FileSessionStore(settings.storage_dir)


def build_engine(
    settings: CardsmithSettings,
    store: SessionStoreProtocol,
    registry: ToolRegistry,
    user_input_callback: UserInputCallback | None = None,
    event_callback: Callable[[EngineEvent], None] | None = None,
) -> ExecutionEngine:
    return ExecutionEngine(
        store,
        registry,
        max_iterations=settings.max_iterations,
        tool_timeout=settings.tool_timeout_seconds,
        user_input_callback=user_input_callback,
        event_callback=event_callback,
    )
