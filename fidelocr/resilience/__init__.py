"""Resilience utilities for cloud vision calls.

- Fallback chain: ordered (provider, model) steps built from settings
- Fallback controller: walks the chain with rate-limit downgrade rules
"""

from fidelocr.resilience.fallback import (
    FallbackChain,
    FallbackController,
    FallbackOutcome,
    FallbackStep,
    StepKind,
    build_fallback_chain,
)

__all__ = [
    "FallbackChain",
    "FallbackController",
    "FallbackOutcome",
    "FallbackStep",
    "StepKind",
    "build_fallback_chain",
]
