"""Shared fixtures: in-memory images, a scripted OCR worker and a scripted vision provider."""

import io
import json
from typing import Callable, Mapping, Optional

import pytest
from PIL import Image

from fidelocr.core.exceptions import LocalEngineError
from fidelocr.models.dto import Provider

AMHARIC_TEXT = "ሰላም ለዓለም"


def image_bytes(width: int = 10, height: int = 10, fmt: str = "PNG", frames: int = 1) -> bytes:
    buffer = io.BytesIO()
    first = Image.new("RGB", (width, height), "white")
    if frames > 1:
        extra = [Image.new("RGB", (width, height), "white") for _ in range(frames - 1)]
        first.save(buffer, format=fmt, save_all=True, append_images=extra)
    else:
        first.save(buffer, format=fmt)
    return buffer.getvalue()


def ocr_payload(
    text: str = AMHARIC_TEXT,
    language: str = "am",
    confidence=0.9,
    complexity: str = "low",
) -> str:
    return json.dumps(
        {
            "extractedText": text,
            "layoutPreserved": text,
            "detectedLanguage": language,
            "confidence": confidence,
            "documentType": "letter",
            "layoutAnalysis": {
                "textBlocks": 1,
                "tables": 0,
                "images": 0,
                "columns": 1,
                "complexity": complexity,
            },
            "metadata": {"wordCount": len(text.split()), "characterCount": len(text)},
        },
        ensure_ascii=False,
    )


class FakeWorker:
    """OCRWorker whose output is decided by ``respond(languages, parameters, image)``."""

    def __init__(
        self,
        respond: Callable[[str, Mapping[str, str], Image.Image], str],
        load_error: Optional[str] = None,
    ):
        self._respond = respond
        self._load_error = load_error
        self.languages: Optional[str] = None
        self.parameters: dict = {}
        self.pages = 0
        self.terminated = False

    def load(self, languages: str) -> None:
        if self._load_error:
            raise LocalEngineError(self._load_error)
        self.languages = languages

    def configure(self, parameters: Mapping[str, str]) -> None:
        self.parameters = dict(parameters)

    def recognize(self, image: Image.Image) -> str:
        self.pages += 1
        return self._respond(self.languages, self.parameters, image)

    def terminate(self) -> None:
        self.terminated = True


class WorkerFactory:
    """Builds FakeWorkers and keeps every one it built."""

    def __init__(self, respond, load_error: Optional[str] = None):
        self._respond = respond
        self._load_error = load_error
        self.workers: list[FakeWorker] = []

    def __call__(self) -> FakeWorker:
        worker = FakeWorker(self._respond, self._load_error)
        self.workers.append(worker)
        return worker


class FakeVisionProvider:
    """VisionProvider answering from a per-model script.

    ``script`` maps a model id to a list of replies consumed in order; a
    reply that is an exception instance is raised instead of returned.
    """

    def __init__(self, provider: Provider, script: Mapping[str, list]):
        self.provider = provider
        self._script = {model: list(replies) for model, replies in script.items()}
        self.calls: list[tuple[str, str]] = []
        self.closed = False

    async def generate(self, prompt, image, model, options) -> str:
        self.calls.append((model, prompt))
        replies = self._script.get(model)
        if not replies:
            raise AssertionError(f"Unexpected call to {model}")
        reply = replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def png_bytes() -> bytes:
    return image_bytes()


@pytest.fixture
def tiff_bytes() -> bytes:
    return image_bytes(fmt="TIFF", frames=2)


@pytest.fixture
def make_worker_factory():
    return WorkerFactory


@pytest.fixture
def make_provider():
    return FakeVisionProvider


@pytest.fixture
def make_payload():
    return ocr_payload
