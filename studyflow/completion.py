"""Text-completion capability used by ``ai_task`` steps."""

from __future__ import annotations

import logging
from typing import Optional, Protocol

from pydantic_ai import Agent
from pydantic_ai.models import Model

from .config import AIConfig

logger = logging.getLogger(__name__)


class CompletionClient(Protocol):
    """Opaque text-completion capability."""

    async def complete(
        self,
        prompt: str,
        *,
        system_prompt: Optional[str] = None,
        model: Optional[str] = None,
    ) -> str:
        """Return the completion text for ``prompt``."""


class AgentCompletionClient:
    """Run a one-shot pydantic-ai agent per completion request.

    ``model_override`` forces every request onto the given model, which is how
    tests plug in ``pydantic_ai.models.test.TestModel``.
    """

    def __init__(
        self,
        config: Optional[AIConfig] = None,
        model_override: Model | str | None = None,
    ) -> None:
        self._config = config or AIConfig()
        self._model_override = model_override

    def _build_agent(self, system_prompt: Optional[str], model: Optional[str]) -> Agent:
        return Agent(
            self._model_override or model or self._config.default_model,
            output_type=str,
            system_prompt=system_prompt or self._config.default_system_prompt,
        )

    async def complete(
        self,
        prompt: str,
        *,
        system_prompt: Optional[str] = None,
        model: Optional[str] = None,
    ) -> str:
        agent = self._build_agent(system_prompt, model)
        logger.debug(f"Requesting completion from {agent.model}")
        result = await agent.run(prompt)
        return result.output
