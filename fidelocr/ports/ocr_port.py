"""OCRWorker protocol for the on-device recognition engine."""

from __future__ import annotations

from typing import Callable, Mapping, Protocol

from PIL import Image


class OCRWorker(Protocol):
    """A single-use engine worker.

    Lifecycle is load -> configure -> recognize (any number of pages) ->
    terminate. Workers are never shared between recognition calls.
    """

    def load(self, languages: str) -> None: ...

    def configure(self, parameters: Mapping[str, str]) -> None: ...

    def recognize(self, image: Image.Image) -> str: ...

    def terminate(self) -> None: ...


OCRWorkerFactory = Callable[[], OCRWorker]
