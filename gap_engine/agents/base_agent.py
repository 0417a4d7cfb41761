"""Base class for structured-output Pydantic AI agents."""

import logging
import time
from abc import ABC, abstractmethod
from typing import Generic, TypeVar

from pydantic import BaseModel
from pydantic_ai import Agent
from pydantic_ai.settings import ModelSettings

from gap_engine.config import settings

logger = logging.getLogger(__name__)

InputT = TypeVar("InputT", bound=BaseModel)
OutputT = TypeVar("OutputT", bound=BaseModel)


class BaseAgent(ABC, Generic[InputT, OutputT]):
    """Typed wrapper around a lazily built pydantic-ai ``Agent``.

    Subclasses supply ``system_prompt``, ``output_type`` and ``_build_prompt``.
    The underlying agent is only created on first use, so constructing a
    subclass never touches provider credentials.
    """

    model_tier: str = "standard"
    model: str | None = None
    temperature: float = 0.7
    max_retries: int = settings.llm_max_retries

    def __init__(self, model_override: str | None = None) -> None:
        self._model, model_source = self._resolve_model(model_override)
        self._agent: Agent[None, OutputT] | None = None
        logger.info(
            "Agent initialized",
            extra={
                "agent": type(self).__name__,
                "model": self._model,
                "model_source": model_source,
                "temperature": self.temperature,
            },
        )

    def _resolve_model(self, model_override: str | None) -> tuple[str, str]:
        """Runtime override, then class attribute, then the configured tier."""
        if model_override:
            return model_override, "runtime_override"
        if self.model:
            return self.model, "class_override"
        return settings.get_model(self.model_tier), "tier_default"

    @property
    def model_name(self) -> str:
        return self._model

    @property
    def agent(self) -> Agent[None, OutputT]:
        if self._agent is None:
            self._agent = Agent(
                self._model,
                output_type=self.output_type,
                system_prompt=self.system_prompt,
                retries=self.max_retries,
                model_settings=ModelSettings(temperature=self.temperature),
            )
        return self._agent

    @property
    @abstractmethod
    def system_prompt(self) -> str:
        """Instructions sent as the system message."""

    @property
    @abstractmethod
    def output_type(self) -> type[OutputT]:
        """Pydantic model the agent must return."""

    @abstractmethod
    def _build_prompt(self, input_data: InputT) -> str:
        """Render the user prompt for ``input_data``."""

    async def run(self, input_data: InputT) -> OutputT:
        """Send the rendered prompt and return the validated structured output."""
        prompt = self._build_prompt(input_data)
        started = time.perf_counter()
        result = await self.agent.run(prompt)

        usage = result.usage()
        logger.info(
            "Agent run completed",
            extra={
                "agent": type(self).__name__,
                "model": self._model,
                "prompt_chars": len(prompt),
                "duration_s": round(time.perf_counter() - started, 2),
                "input_tokens": usage.input_tokens,
                "output_tokens": usage.output_tokens,
            },
        )
        return result.output
