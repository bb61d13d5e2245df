"""
Model/provider fallback for cloud recognition.

The chain is plain data: an ordered tuple of (provider, model) steps built
from the processing settings. ``FallbackController`` interprets it:

- success stops the chain;
- a rate limit moves to the next model of the same provider exactly once,
  after which that provider is abandoned if the downgrade fails too;
- any other provider failure advances to the next step of the full chain;
- running out of steps raises AllRoutesFailedError.

The same model is never called twice within one run.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from fidelocr.clients.openrouter_client import decode_model_identifier
from fidelocr.core.config import GEMINI_LAST_RESORT_MODEL, OPENROUTER_LAST_RESORT_MODEL
from fidelocr.core.exceptions import (
    AllRoutesFailedError,
    ExternalServiceError,
    MissingCredentialsError,
    RateLimitedError,
)
from fidelocr.models.dto import ProcessingSettings, Provider

logger = logging.getLogger(__name__)


class StepKind(str, Enum):
    PRIMARY = "primary"
    MODEL_DOWNGRADE = "model_downgrade"
    LAST_RESORT = "last_resort"
    PROVIDER_SWITCH = "provider_switch"


@dataclass(frozen=True)
class FallbackStep:
    provider: Provider
    model: str
    kind: StepKind


@dataclass(frozen=True)
class FallbackChain:
    steps: tuple[FallbackStep, ...]

    def __iter__(self):
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)

    @property
    def primary(self) -> FallbackStep:
        return self.steps[0]


@dataclass(frozen=True)
class FallbackOutcome:
    text: str
    step: FallbackStep
    attempts: tuple[dict[str, Any], ...] = ()


StepCall = Callable[[FallbackStep, str], Awaitable[str]]


def _provider_steps(provider: Provider, models: list[str], first_kind: StepKind) -> list[FallbackStep]:
    steps = []
    for i, model in enumerate(models):
        if i == 0:
            kind = first_kind
        elif i == len(models) - 1:
            kind = StepKind.LAST_RESORT
        else:
            kind = StepKind.MODEL_DOWNGRADE
        steps.append(FallbackStep(provider, model, kind))
    return steps


def build_fallback_chain(settings: ProcessingSettings) -> FallbackChain:
    """Order the cloud attempts for a batch.

    Gemini leads when its key is present (primary, configured fallback,
    last-resort lightweight model), then OpenRouter when its key is present.

    Raises:
        MissingCredentialsError: neither provider has a usable key
    """
    segments: list[FallbackStep] = []
    if settings.gemini_key():
        segments += _provider_steps(
            Provider.GEMINI,
            [settings.model, settings.fallback_model, GEMINI_LAST_RESORT_MODEL],
            StepKind.PRIMARY,
        )
    if settings.openrouter_key():
        segments += _provider_steps(
            Provider.OPENROUTER,
            [decode_model_identifier(settings.openrouter_model), OPENROUTER_LAST_RESORT_MODEL],
            StepKind.PROVIDER_SWITCH if segments else StepKind.PRIMARY,
        )
    if not segments:
        raise MissingCredentialsError("Cloud route requires a Gemini or OpenRouter key")

    seen: set[tuple[Provider, str]] = set()
    steps = []
    for step in segments:
        key = (step.provider, step.model)
        if step.model and key not in seen:
            seen.add(key)
            steps.append(step)
    return FallbackChain(tuple(steps))


def _next_provider_index(steps: tuple[FallbackStep, ...], index: int) -> int:
    provider = steps[index].provider
    nxt = index + 1
    while nxt < len(steps) and steps[nxt].provider == provider:
        nxt += 1
    return nxt


class FallbackController:
    """Run one prompt through the chain until a step returns text.

    Args:
        chain: Ordered steps to try
        call: Coroutine performing one provider call for a step
        timeout_seconds: Deadline applied to every individual call
    """

    def __init__(
        self,
        chain: FallbackChain,
        call: StepCall,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self.chain = chain
        self._call = call
        self._timeout_seconds = timeout_seconds

    async def _attempt(self, step: FallbackStep, prompt: str) -> str:
        try:
            return await asyncio.wait_for(self._call(step, prompt), self._timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise ExternalServiceError(
                step.provider.value,
                "timeout",
                details={"model": step.model, "timeout_seconds": self._timeout_seconds},
            ) from exc

    async def run(
        self, prompt: str, start_at: Optional[FallbackStep] = None
    ) -> FallbackOutcome:
        steps = self.chain.steps
        index = steps.index(start_at) if start_at is not None else 0
        attempts: list[dict[str, Any]] = []
        downgraded: set[Provider] = set()

        while index < len(steps):
            step = steps[index]
            try:
                text = await self._attempt(step, prompt)
            except RateLimitedError as exc:
                attempts.append(
                    {"provider": step.provider.value, "model": step.model, "error_code": exc.error_code}
                )
                nxt = index + 1
                same_provider_next = nxt < len(steps) and steps[nxt].provider == step.provider
                if same_provider_next and step.provider not in downgraded:
                    downgraded.add(step.provider)
                    logger.warning(
                        f"Rate limited; downgrading to {steps[nxt].model}",
                        extra={
                            "provider": step.provider.value,
                            "model": step.model,
                            "attempt": len(attempts),
                            "error_code": exc.error_code,
                        },
                    )
                    index = nxt
                else:
                    index = _next_provider_index(steps, index)
                continue
            except ExternalServiceError as exc:
                attempts.append(
                    {"provider": step.provider.value, "model": step.model, "error_code": exc.error_code}
                )
                logger.warning(
                    f"Vision call failed: {exc.message}",
                    extra={
                        "provider": step.provider.value,
                        "model": step.model,
                        "attempt": len(attempts),
                        "error_code": exc.error_code,
                    },
                )
                if step.provider in downgraded:
                    index = _next_provider_index(steps, index)
                else:
                    index += 1
                continue

            if attempts:
                logger.info(
                    "Fallback step succeeded",
                    extra={
                        "provider": step.provider.value,
                        "model": step.model,
                        "attempt": len(attempts) + 1,
                    },
                )
            return FallbackOutcome(text=text, step=step, attempts=tuple(attempts))

        raise AllRoutesFailedError(attempts)
