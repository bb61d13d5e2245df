"""
On-device recognition with Tesseract.

``TesseractWorker`` wraps pytesseract behind the OCRWorker lifecycle and
``LocalOCRAdapter`` drives it: one freshly created worker per recognition
pass, always terminated, with blocking engine calls pushed to a thread so
the event loop keeps serving other work.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Mapping, Optional

import pytesseract
from PIL import Image

from fidelocr.core.config import (
    LATIN_BLACKLIST,
    LOCAL_BASELINE_CONFIDENCE,
    OEM_LSTM_ONLY,
    PSM_SINGLE_BLOCK,
    PSM_SINGLE_COLUMN,
    SECOND_PASS_DENSITY_THRESHOLD,
    SECOND_PASS_IMPROVEMENT_FACTOR,
    SECOND_PASS_MIN_ETHIOPIC_CHARS,
    TARGET_LANGUAGE,
    TESSERACT_DPI,
)
from fidelocr.core.exceptions import LocalEngineError, UnsupportedFormatError
from fidelocr.core.settings import get_local_engine_settings
from fidelocr.models.dto import (
    LayoutAnalysis,
    ProcessingSettings,
    RecognitionDraft,
    RouteDecision,
    SourceFile,
)
from fidelocr.ports.ocr_port import OCRWorker, OCRWorkerFactory
from fidelocr.processors.text_cleanup import (
    LOCAL_CLEANUP_RULES,
    apply_rules,
    contains_ethiopic,
    count_ethiopic,
    ethiopic_density,
)
from fidelocr.utils.file_detection import resolve_mime_type
from fidelocr.utils.image_utils import load_frames, preprocess_for_ocr

logger = logging.getLogger(__name__)

ENGINE_NAME = "tesseract"
PAGE_SEPARATOR = "\n\n"

# Parameters translated into command-line flags rather than -c variables
_FLAG_PARAMETERS = {
    "tessedit_pageseg_mode": "--psm",
    "tessedit_ocr_engine_mode": "--oem",
    "user_defined_dpi": "--dpi",
}


class TesseractWorker:
    """OCRWorker backed by the tesseract binary via pytesseract."""

    def __init__(
        self,
        tesseract_cmd: Optional[str] = None,
        tessdata_dir: Optional[str] = None,
    ) -> None:
        self._tesseract_cmd = tesseract_cmd
        self._tessdata_dir = tessdata_dir
        self._languages: Optional[str] = None
        self._config = ""
        self._terminated = False

    def _base_config(self) -> str:
        return f'--tessdata-dir "{self._tessdata_dir}"' if self._tessdata_dir else ""

    def load(self, languages: str) -> None:
        if self._tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = self._tesseract_cmd
        try:
            installed = set(pytesseract.get_languages(config=self._base_config()))
        except (pytesseract.TesseractNotFoundError, pytesseract.TesseractError) as exc:
            raise LocalEngineError(f"Tesseract unavailable: {exc}") from exc

        missing = [lang for lang in languages.split("+") if lang not in installed]
        if missing:
            raise LocalEngineError(f"Missing Tesseract language data: {', '.join(missing)}")
        self._languages = languages

    def configure(self, parameters: Mapping[str, str]) -> None:
        parts = [self._base_config()] if self._tessdata_dir else []
        for name, value in parameters.items():
            flag = _FLAG_PARAMETERS.get(name)
            if flag:
                parts.append(f"{flag} {value}")
            else:
                parts.append(f"-c {name}={value}")
        self._config = " ".join(parts)

    def recognize(self, image: Image.Image) -> str:
        if self._terminated:
            raise RuntimeError("Worker already terminated")
        if self._languages is None:
            raise RuntimeError("Worker used before load()")
        try:
            return pytesseract.image_to_string(
                image, lang=self._languages, config=self._config
            )
        except pytesseract.TesseractError as exc:
            raise LocalEngineError(f"Tesseract failed: {exc}") from exc

    def terminate(self) -> None:
        self._terminated = True
        self._languages = None


def default_worker_factory() -> OCRWorker:
    settings = get_local_engine_settings()
    return TesseractWorker(
        tesseract_cmd=settings.TESSERACT_CMD,
        tessdata_dir=settings.TESSDATA_DIR,
    )


@asynccontextmanager
async def scoped_worker(
    factory: OCRWorkerFactory,
    languages: str,
    parameters: Mapping[str, str],
) -> AsyncIterator[OCRWorker]:
    """Create, load and configure a worker; terminate it on every exit path."""
    worker = factory()
    try:
        await asyncio.to_thread(worker.load, languages)
        await asyncio.to_thread(worker.configure, parameters)
        yield worker
    finally:
        await asyncio.to_thread(worker.terminate)


def build_parameters(page_segmentation: int, strict: bool) -> dict[str, str]:
    parameters = {
        "tessedit_pageseg_mode": str(page_segmentation),
        "tessedit_ocr_engine_mode": str(OEM_LSTM_ONLY),
        "preserve_interword_spaces": "1",
        "user_defined_dpi": str(TESSERACT_DPI),
    }
    if strict:
        parameters["tessedit_char_blacklist"] = LATIN_BLACKLIST
    return parameters


class LocalOCRAdapter:
    """Local recognition path producing a RecognitionDraft, or None for no text."""

    def __init__(self, worker_factory: Optional[OCRWorkerFactory] = None) -> None:
        self._worker_factory = worker_factory or default_worker_factory

    async def is_ready(self) -> bool:
        """True when a worker can load the Amharic model."""
        try:
            async with scoped_worker(self._worker_factory, "amh", {}):
                return True
        except LocalEngineError as exc:
            logger.warning(f"Local engine not ready: {exc.message}")
            return False

    async def _run_pass(
        self,
        pages: list[Image.Image],
        languages: str,
        parameters: Mapping[str, str],
    ) -> str:
        async with scoped_worker(self._worker_factory, languages, parameters) as worker:
            texts = []
            for page in pages:
                texts.append(await asyncio.to_thread(worker.recognize, page))
        return PAGE_SEPARATOR.join(t.strip("\n") for t in texts)

    async def recognize(
        self,
        data: bytes,
        file: SourceFile,
        settings: ProcessingSettings,
    ) -> Optional[RecognitionDraft]:
        pinned = settings.script_pinned(file)
        try:
            pages = await asyncio.to_thread(load_frames, data)
        except (OSError, ValueError, Image.DecompressionBombError) as exc:
            raise UnsupportedFormatError(
                resolve_mime_type(data, file.mime_type),
                "Local engine accepts raster images only",
            ) from exc
        if settings.enhance_image:
            pages = [preprocess_for_ocr(p) for p in pages]

        languages = "amh" if pinned or settings.strict_script else "amh+eng"
        text = await self._run_pass(
            pages, languages, build_parameters(PSM_SINGLE_COLUMN, settings.strict_script)
        )
        notes = []

        eth_chars = count_ethiopic(text)
        density = ethiopic_density(text)
        if (pinned or eth_chars > SECOND_PASS_MIN_ETHIOPIC_CHARS) and (
            density < SECOND_PASS_DENSITY_THRESHOLD
        ):
            try:
                retry = await self._run_pass(
                    pages, "amh", build_parameters(PSM_SINGLE_BLOCK, settings.strict_script)
                )
            except LocalEngineError as exc:
                detail = exc.details.get("detail", exc.message)
                logger.warning(
                    f"Second local pass failed, keeping first pass: {detail}",
                    extra={
                        "file_id": file.id,
                        "provider": ENGINE_NAME,
                        "error_code": exc.error_code,
                    },
                )
                retry = ""
            retry_density = ethiopic_density(retry)
            if retry and (
                retry_density > density * SECOND_PASS_IMPROVEMENT_FACTOR
                or count_ethiopic(retry) > eth_chars
            ):
                logger.info(
                    "Second local pass improved Ethiopic density",
                    extra={"file_id": file.id, "provider": ENGINE_NAME},
                )
                text = retry
                languages = "amh"
                notes.append("local_second_pass")

        if not text.strip():
            return None

        cleaned, changed = apply_rules(text, LOCAL_CLEANUP_RULES)
        notes.extend(f"cleanup:{name}" for name in changed)

        if pinned or contains_ethiopic(cleaned):
            language = TARGET_LANGUAGE
        else:
            language = "en"

        return RecognitionDraft(
            text=cleaned.strip(),
            layout_text=text,
            language=language,
            confidence=LOCAL_BASELINE_CONFIDENCE,
            engine=ENGINE_NAME,
            route=RouteDecision.LOCAL,
            model=f"{ENGINE_NAME}:{languages}",
            layout=LayoutAnalysis(
                text_blocks=1, tables=0, images=0, columns=1, complexity="medium"
            ),
            page_count=len(pages),
            notes=notes,
        )
