"""
Route selection: decide once per file whether recognition runs locally or
through a cloud vision model.

``decide`` is pure and total. The learned classifier hook can override the
credential-based steps, but never the routing mode or the format rule, and
any classifier error falls back to the heuristic.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional, Protocol

from fidelocr.core.config import NON_INGESTIBLE_EXTENSIONS, NON_INGESTIBLE_MIME_TYPES
from fidelocr.models.dto import (
    ProcessingSettings,
    RouteDecision,
    RouterStrategy,
    RoutingMode,
    SourceFile,
)

logger = logging.getLogger(__name__)


class RouteClassifier(Protocol):
    """Learned routing model. Returns "local", "cloud" or None to abstain."""

    def predict(self, features: Mapping[str, Any]) -> Optional[str]: ...


class NullRouteClassifier:
    """Placeholder model that always abstains."""

    def predict(self, features: Mapping[str, Any]) -> Optional[str]:
        return None


def cloud_can_ingest(file: SourceFile) -> bool:
    """False for multi-page raster formats the vision path cannot take directly."""
    mime = (file.mime_type or "").lower()
    if mime in NON_INGESTIBLE_MIME_TYPES:
        return False
    return file.extension not in NON_INGESTIBLE_EXTENSIONS


def build_route_features(
    settings: ProcessingSettings, file: SourceFile
) -> dict[str, Any]:
    size = len(file.content) if file.content is not None else len(file.data_url or "")
    return {
        "size_bytes": size,
        "mime_type": (file.mime_type or "").lower(),
        "extension": file.extension,
        "has_gemini_key": settings.gemini_key() is not None,
        "has_openrouter_key": settings.openrouter_key() is not None,
        "script_pinned": settings.script_pinned(file),
        "strict_script": settings.strict_script,
        "language_hint": (file.language_hint or "").lower() or None,
    }


def _classify(
    classifier: RouteClassifier, settings: ProcessingSettings, file: SourceFile
) -> Optional[RouteDecision]:
    try:
        label = classifier.predict(build_route_features(settings, file))
    except Exception:
        logger.warning(
            "Route classifier failed; using heuristic",
            extra={"file_id": file.id},
            exc_info=True,
        )
        return None
    if label is None:
        return None
    try:
        return RouteDecision(str(label).strip().lower())
    except ValueError:
        logger.debug(
            f"Route classifier returned unknown label {label!r}",
            extra={"file_id": file.id},
        )
        return None


def decide(
    settings: ProcessingSettings,
    file: SourceFile,
    classifier: Optional[RouteClassifier] = None,
) -> RouteDecision:
    """Pick the recognition route for ``file``.

    Rules, first match wins:
      1. local-only / cloud-only modes are absolute.
      2. Formats the cloud path cannot ingest directly go local.
      3. Pinned script with the vision key goes cloud.
      4. Cloud when any credential exists, otherwise local.
    With the learned strategy, a classifier label replaces rules 3 and 4.
    """
    if settings.routing_mode == RoutingMode.LOCAL_ONLY:
        return RouteDecision.LOCAL
    if settings.routing_mode == RoutingMode.CLOUD_ONLY:
        return RouteDecision.CLOUD

    if not cloud_can_ingest(file):
        return RouteDecision.LOCAL

    if settings.router_strategy == RouterStrategy.LEARNED:
        learned = _classify(classifier or NullRouteClassifier(), settings, file)
        if learned is not None:
            return learned

    if settings.script_pinned(file) and settings.gemini_key():
        return RouteDecision.CLOUD

    return RouteDecision.CLOUD if settings.has_cloud_credentials() else RouteDecision.LOCAL
