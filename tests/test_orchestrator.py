"""
End-to-end tests for PipelineRunner with scripted local workers and vision providers.

No real engine or network is involved: the local path runs FakeWorkers and
the cloud path runs FakeVisionProviders injected through provider factories.
"""

import asyncio
import base64

import pytest

from fidelocr.clients.tesseract_client import LocalOCRAdapter
from fidelocr.core.exceptions import ExternalServiceError, LocalEngineError, RateLimitedError
from fidelocr.models.dto import (
    FailureReason,
    ProcessingSettings,
    Provider,
    RouteDecision,
    RoutingMode,
    SourceFile,
    Stage,
)
from fidelocr.orchestrator import PipelineRunner
from fidelocr.processors.prompts import SCRIPT_FOCUS_PROMPT_V1, STRICT_SCHEMA_PROMPT_V1

AMHARIC = "ሰላም ለዓለም"
INVOICE = "INVOICE\nQty Rate Amount\nSubtotal Tax Total"
GEMINI_MODELS = ("gemini-2.5-pro", "gemini-2.5-flash", "gemini-1.5-flash")


def _runner(factory, gemini=None):
    factories = {Provider.GEMINI: lambda key: gemini} if gemini is not None else None
    return PipelineRunner(
        local_adapter=LocalOCRAdapter(factory),
        provider_factories=factories,
        timeout_seconds=5,
    )


def _png(png_bytes, name="page.png", **kwargs):
    return SourceFile(name=name, mime_type="image/png", content=png_bytes, **kwargs)


@pytest.fixture
def amharic_worker(make_worker_factory):
    return make_worker_factory(lambda langs, params, image: AMHARIC)


@pytest.fixture
def empty_worker(make_worker_factory):
    return make_worker_factory(lambda langs, params, image: "")


class TestLocalPipeline:
    """Tests for batches served by the local engine."""

    @pytest.mark.asyncio
    async def test_batch_isolates_failures(self, png_bytes, amharic_worker):
        """Test one bad file fails alone and outcomes keep submission order."""
        files = [
            _png(png_bytes, "a.png"),
            SourceFile(name="b.png", mime_type="image/png", content=b""),
            _png(png_bytes, "c.png"),
        ]

        batch = await _runner(amharic_worker).run_batch(files, ProcessingSettings())

        assert [o.file_id for o in batch.outcomes] == [f.id for f in files]
        assert [o.status for o in batch.outcomes] == [Stage.DONE, Stage.FAILED, Stage.DONE]
        assert batch.outcomes[1].failure.reason == FailureReason.SOURCE_UNAVAILABLE
        assert len(batch.results) == 2
        assert len(batch.failures) == 1

    @pytest.mark.asyncio
    async def test_batch_with_unreadable_middle_file(self, png_bytes, make_worker_factory):
        """Test a file the engine reads as blank fails while its neighbours succeed."""
        calls = []

        def respond(langs, params, image):
            calls.append(image)
            return "" if len(calls) == 2 else AMHARIC

        files = [_png(png_bytes, f"{name}.png") for name in ("a", "b", "c")]
        batch = await _runner(make_worker_factory(respond)).run_batch(files, ProcessingSettings())

        assert [o.status for o in batch.outcomes] == [Stage.DONE, Stage.FAILED, Stage.DONE]
        assert batch.outcomes[1].failure.reason == FailureReason.EMPTY_RESPONSE
        assert batch.outcomes[0].result.extracted_text == AMHARIC

    @pytest.mark.asyncio
    async def test_local_result(self, png_bytes, amharic_worker):
        """Test local Amharic text is assessed and its confidence lifted."""
        batch = await _runner(amharic_worker).run_batch([_png(png_bytes)], ProcessingSettings())

        [result] = batch.results
        assert result.extracted_text == AMHARIC
        assert result.detected_language == "am"
        assert result.confidence == pytest.approx(0.9)
        assert result.metadata.route == RouteDecision.LOCAL
        assert result.metadata.engine == "tesseract"
        assert result.metadata.word_count == 2
        assert result.metadata.character_count == len(AMHARIC)
        assert result.metadata.quality["overall_quality"] == "excellent"
        assert set(result.metadata.stage_timings_ms) == {
            "preparing",
            "recognizing",
            "parsing",
            "assessing",
        }

    @pytest.mark.asyncio
    async def test_latin_local_result_not_assessed(self, png_bytes, make_worker_factory):
        """Test unpinned Latin output keeps the engine baseline confidence."""
        factory = make_worker_factory(lambda langs, params, image: "Hello world")
        batch = await _runner(factory).run_batch([_png(png_bytes)], ProcessingSettings())

        [result] = batch.results
        assert result.confidence == pytest.approx(0.8)
        assert result.detected_language == "en"
        assert result.metadata.quality is None

    @pytest.mark.asyncio
    async def test_local_only_never_calls_cloud(self, png_bytes, amharic_worker, make_provider):
        """Test local-only mode ignores available credentials."""
        gemini = make_provider(Provider.GEMINI, {})
        settings = ProcessingSettings(routing_mode=RoutingMode.LOCAL_ONLY, gemini_api_key="g")

        batch = await _runner(amharic_worker, gemini).run_batch([_png(png_bytes)], settings)

        assert batch.outcomes[0].status == Stage.DONE
        assert gemini.calls == []

    @pytest.mark.asyncio
    async def test_tiff_routes_local(self, tiff_bytes, amharic_worker, make_provider):
        """Test multi-page TIFF goes local even with a vision key."""
        gemini = make_provider(Provider.GEMINI, {})
        file = SourceFile(name="scan.tiff", mime_type="image/tiff", content=tiff_bytes)
        settings = ProcessingSettings(gemini_api_key="g", force_script=True)

        batch = await _runner(amharic_worker, gemini).run_batch([file], settings)

        [result] = batch.results
        assert result.metadata.route == RouteDecision.LOCAL
        assert result.metadata.page_count == 2
        assert gemini.calls == []

    @pytest.mark.asyncio
    async def test_local_empty_without_cloud(self, png_bytes, empty_worker):
        """Test empty local output fails when no cloud path exists."""
        batch = await _runner(empty_worker).run_batch([_png(png_bytes)], ProcessingSettings())

        failure = batch.outcomes[0].failure
        assert failure.reason == FailureReason.EMPTY_RESPONSE

    @pytest.mark.asyncio
    async def test_local_empty_falls_back_to_cloud(
        self, tiff_bytes, empty_worker, make_provider, make_payload
    ):
        """Test empty local output is retried through the cloud in auto mode."""
        gemini = make_provider(Provider.GEMINI, {"gemini-2.5-pro": [make_payload()]})
        file = SourceFile(name="scan.tiff", mime_type="image/tiff", content=tiff_bytes)

        batch = await _runner(empty_worker, gemini).run_batch(
            [file], ProcessingSettings(gemini_api_key="g")
        )

        [result] = batch.results
        assert result.metadata.route == RouteDecision.CLOUD
        assert "local_empty_cloud_fallback" in result.metadata.notes
        assert len(gemini.calls) == 1

    @pytest.mark.asyncio
    async def test_local_engine_error(self, png_bytes, make_worker_factory):
        """Test an unusable engine fails the file with its own reason."""
        factory = make_worker_factory(lambda *a: "", load_error="amh missing")

        batch = await _runner(factory).run_batch([_png(png_bytes)], ProcessingSettings())

        failure = batch.outcomes[0].failure
        assert failure.reason == FailureReason.LOCAL_ENGINE_ERROR
        assert failure.message == "amh missing"

    @pytest.mark.asyncio
    async def test_second_pass_crash_keeps_first_pass(self, png_bytes, make_worker_factory):
        """Test a crashing retry pass does not fail a file the first pass already read."""

        def respond(langs, params, image):
            if params["tessedit_pageseg_mode"] == "6":
                raise LocalEngineError("second pass crashed")
            return "Hello ሰላም world text"

        settings = ProcessingSettings(routing_mode=RoutingMode.LOCAL_ONLY, force_script=True)
        batch = await _runner(make_worker_factory(respond)).run_batch(
            [_png(png_bytes)], settings
        )

        assert batch.outcomes[0].status == Stage.DONE
        assert batch.outcomes[0].result.extracted_text == "Hello ሰላም world text"


class TestSources:
    """Tests for the preparing stage."""

    @pytest.mark.asyncio
    async def test_missing_content(self, amharic_worker):
        """Test a file with neither bytes nor data URL is unavailable."""
        file = SourceFile(name="a.png", mime_type="image/png")

        batch = await _runner(amharic_worker).run_batch([file], ProcessingSettings())

        assert batch.outcomes[0].failure.reason == FailureReason.SOURCE_UNAVAILABLE
        assert batch.outcomes[0].failure.details["file_id"] == file.id

    @pytest.mark.asyncio
    async def test_invalid_data_url(self, amharic_worker):
        """Test a malformed data URL is unavailable."""
        file = SourceFile(name="a.png", data_url="data:image/png;base64,@@@")

        batch = await _runner(amharic_worker).run_batch([file], ProcessingSettings())

        assert batch.outcomes[0].failure.reason == FailureReason.SOURCE_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_data_url(self, png_bytes, amharic_worker):
        """Test base64 data URLs are decoded and processed."""
        url = "data:image/png;base64," + base64.b64encode(png_bytes).decode()
        file = SourceFile(name="a.png", data_url=url)

        batch = await _runner(amharic_worker).run_batch([file], ProcessingSettings())

        assert batch.outcomes[0].status == Stage.DONE

    @pytest.mark.asyncio
    async def test_empty_content_uses_data_url(self, png_bytes, amharic_worker):
        """Test empty raw bytes fall through to the data URL."""
        url = "data:image/png;base64," + base64.b64encode(png_bytes).decode()
        file = SourceFile(name="a.png", content=b"", data_url=url)

        batch = await _runner(amharic_worker).run_batch([file], ProcessingSettings())

        assert batch.outcomes[0].status == Stage.DONE
        assert batch.outcomes[0].result.extracted_text == AMHARIC


class TestCloudPipeline:
    """Tests for batches served by vision models."""

    @pytest.mark.asyncio
    async def test_rate_limit_downgrade(self, png_bytes, amharic_worker, make_provider, make_payload):
        """Test a rate-limited primary model is replaced by the fallback model."""
        gemini = make_provider(
            Provider.GEMINI,
            {
                "gemini-2.5-pro": [RateLimitedError("gemini")],
                "gemini-2.5-flash": [make_payload()],
            },
        )
        settings = ProcessingSettings(gemini_api_key="g", force_script=True)

        batch = await _runner(amharic_worker, gemini).run_batch([_png(png_bytes)], settings)

        [result] = batch.results
        assert result.metadata.route == RouteDecision.CLOUD
        assert result.metadata.provider == "gemini"
        assert result.metadata.model == "gemini-2.5-flash"
        assert "fallback_attempts:1" in result.metadata.notes
        assert result.detected_language == "am"
        assert result.metadata.quality["grade"] == "A"
        assert amharic_worker.workers == []

    @pytest.mark.asyncio
    async def test_fenced_json_needs_no_reprompt(
        self, png_bytes, amharic_worker, make_provider, make_payload
    ):
        """Test fenced JSON output is accepted on the first call."""
        gemini = make_provider(
            Provider.GEMINI, {"gemini-2.5-pro": [f"```json\n{make_payload()}\n```"]}
        )
        settings = ProcessingSettings(gemini_api_key="g", force_script=True)

        batch = await _runner(amharic_worker, gemini).run_batch([_png(png_bytes)], settings)

        [result] = batch.results
        assert result.extracted_text == AMHARIC
        assert result.document_type == "letter"
        assert result.layout_analysis.complexity == "low"
        assert len(gemini.calls) == 1

    @pytest.mark.asyncio
    async def test_prose_gets_one_strict_reprompt(self, png_bytes, amharic_worker, make_provider):
        """Test prose triggers one schema re-prompt, then best-effort text."""
        gemini = make_provider(
            Provider.GEMINI,
            {"gemini-2.5-pro": ["I cannot read this clearly", "Still not JSON"]},
        )
        settings = ProcessingSettings(gemini_api_key="g")

        batch = await _runner(amharic_worker, gemini).run_batch([_png(png_bytes)], settings)

        [result] = batch.results
        assert result.extracted_text == "I cannot read this clearly"
        assert result.confidence == pytest.approx(0.5)
        assert result.detected_language == "unknown"
        assert "schema_validation_failed" in result.metadata.notes
        assert [prompt for _, prompt in gemini.calls][1] == STRICT_SCHEMA_PROMPT_V1
        assert len(gemini.calls) == 2

    @pytest.mark.asyncio
    async def test_pinned_invoice_keeps_original(
        self, png_bytes, amharic_worker, make_provider, make_payload
    ):
        """Test a pinned English invoice gets one script re-prompt and is kept on failure."""
        gemini = make_provider(
            Provider.GEMINI,
            {
                "gemini-2.5-pro": [
                    make_payload(text=INVOICE, language="en", confidence=0.95),
                    make_payload(text="Still English", language="en"),
                ]
            },
        )
        settings = ProcessingSettings(gemini_api_key="g", force_script=True)

        batch = await _runner(amharic_worker, gemini).run_batch([_png(png_bytes)], settings)

        [result] = batch.results
        assert result.extracted_text == INVOICE
        assert result.detected_language == "en"
        assert result.confidence == pytest.approx(0.4)
        assert "script_mismatch" in result.metadata.notes
        assert gemini.calls[1][1] == SCRIPT_FOCUS_PROMPT_V1

    @pytest.mark.asyncio
    async def test_pinned_invoice_replaced(
        self, png_bytes, amharic_worker, make_provider, make_payload
    ):
        """Test an Ethiopic answer to the script re-prompt replaces the invoice."""
        gemini = make_provider(
            Provider.GEMINI,
            {"gemini-2.5-pro": [make_payload(text=INVOICE, language="en"), make_payload()]},
        )
        settings = ProcessingSettings(gemini_api_key="g", force_script=True)

        batch = await _runner(amharic_worker, gemini).run_batch([_png(png_bytes)], settings)

        [result] = batch.results
        assert result.extracted_text == AMHARIC
        assert "script_reprompt_accepted" in result.metadata.notes

    @pytest.mark.asyncio
    async def test_pinned_punctuation(self, png_bytes, amharic_worker, make_provider, make_payload):
        """Test Latin punctuation in pinned output is converted."""
        gemini = make_provider(
            Provider.GEMINI, {"gemini-2.5-pro": [make_payload(text="ሰላም : ዓለም.")]}
        )
        settings = ProcessingSettings(gemini_api_key="g", force_script=True)

        batch = await _runner(amharic_worker, gemini).run_batch([_png(png_bytes)], settings)

        assert batch.results[0].extracted_text == "ሰላም፡ዓለም።"

    @pytest.mark.asyncio
    async def test_cloud_only_without_credentials(self, png_bytes, amharic_worker):
        """Test cloud-only mode without keys fails instead of going local."""
        settings = ProcessingSettings(routing_mode=RoutingMode.CLOUD_ONLY)

        batch = await _runner(amharic_worker).run_batch([_png(png_bytes)], settings)

        assert batch.outcomes[0].failure.reason == FailureReason.MISSING_CREDENTIALS
        assert amharic_worker.workers == []

    @pytest.mark.asyncio
    async def test_cloud_failure_rescued_locally(self, png_bytes, amharic_worker, make_provider):
        """Test exhausted cloud routes fall back to the local engine in auto mode."""
        gemini = make_provider(
            Provider.GEMINI,
            {model: [ExternalServiceError("gemini", "error")] for model in GEMINI_MODELS},
        )

        batch = await _runner(amharic_worker, gemini).run_batch(
            [_png(png_bytes)], ProcessingSettings(gemini_api_key="g")
        )

        [result] = batch.results
        assert result.metadata.route == RouteDecision.LOCAL
        assert "cloud_failed_local_fallback:ALL_ROUTES_FAILED" in result.metadata.notes

    @pytest.mark.asyncio
    async def test_cloud_only_all_routes_failed(self, png_bytes, amharic_worker, make_provider):
        """Test exhausted cloud routes fail the file in cloud-only mode."""
        gemini = make_provider(
            Provider.GEMINI,
            {model: [ExternalServiceError("gemini", "error")] for model in GEMINI_MODELS},
        )
        settings = ProcessingSettings(routing_mode=RoutingMode.CLOUD_ONLY, gemini_api_key="g")

        batch = await _runner(amharic_worker, gemini).run_batch([_png(png_bytes)], settings)

        failure = batch.outcomes[0].failure
        assert failure.reason == FailureReason.ALL_ROUTES_FAILED
        assert len(failure.details["attempts"]) == 3
        assert amharic_worker.workers == []

    @pytest.mark.asyncio
    async def test_cloud_only_unsupported_format(self, amharic_worker, make_provider):
        """Test non-image input cannot be sent to a vision model."""
        gemini = make_provider(Provider.GEMINI, {})
        file = SourceFile(name="doc.pdf", mime_type="application/pdf", content=b"%PDF-1.4")
        settings = ProcessingSettings(routing_mode=RoutingMode.CLOUD_ONLY, gemini_api_key="g")

        batch = await _runner(amharic_worker, gemini).run_batch([file], settings)

        assert batch.outcomes[0].failure.reason == FailureReason.UNSUPPORTED_FORMAT
        assert gemini.calls == []

    @pytest.mark.asyncio
    async def test_registry_closed_after_batch(
        self, png_bytes, amharic_worker, make_provider, make_payload
    ):
        """Test provider clients are released when the batch ends."""
        gemini = make_provider(Provider.GEMINI, {"gemini-2.5-pro": [make_payload()]})

        await _runner(amharic_worker, gemini).run_batch(
            [_png(png_bytes)], ProcessingSettings(gemini_api_key="g")
        )

        assert gemini.closed is True


class TestProgressAndCancellation:
    """Tests for progress events and cooperative cancellation."""

    @pytest.mark.asyncio
    async def test_stage_order(self, png_bytes, amharic_worker):
        """Test a successful file walks every stage in order."""
        events = []

        await _runner(amharic_worker).run_batch(
            [_png(png_bytes)], ProcessingSettings(), on_progress=events.append
        )

        assert [e.stage for e in events] == [
            Stage.PREPARING,
            Stage.ROUTED,
            Stage.RECOGNIZING,
            Stage.PARSING,
            Stage.ASSESSING,
            Stage.DONE,
        ]
        progress = [e.progress for e in events]
        assert progress == sorted(progress)
        assert progress[-1] == 1.0
        assert events[1].message == "local"
        assert events[2].provider == "tesseract"

    @pytest.mark.asyncio
    async def test_events_follow_cloud_fallback(
        self, tiff_bytes, empty_worker, make_provider, make_payload
    ):
        """Test events name the cloud provider once a blank local read moves to the cloud."""
        events = []
        gemini = make_provider(Provider.GEMINI, {"gemini-2.5-pro": [make_payload()]})
        file = SourceFile(name="scan.tiff", mime_type="image/tiff", content=tiff_bytes)

        await _runner(empty_worker, gemini).run_batch(
            [file], ProcessingSettings(gemini_api_key="g"), on_progress=events.append
        )

        recognizing = [e for e in events if e.stage == Stage.RECOGNIZING]
        assert [e.provider for e in recognizing] == ["tesseract", "gemini"]
        assert recognizing[1].message == "local_empty_cloud_fallback"
        later = {
            e.stage: e.provider
            for e in events
            if e.stage in (Stage.PARSING, Stage.ASSESSING, Stage.DONE)
        }
        assert later == {Stage.PARSING: "gemini", Stage.ASSESSING: "gemini", Stage.DONE: "gemini"}
        progress = [e.progress for e in events]
        assert progress == sorted(progress)

    @pytest.mark.asyncio
    async def test_local_events_name_engine(self, png_bytes, amharic_worker):
        """Test every stage after routing names the local engine."""
        events = []

        await _runner(amharic_worker).run_batch(
            [_png(png_bytes)], ProcessingSettings(), on_progress=events.append
        )

        assert [e.provider for e in events[2:]] == ["tesseract"] * 4

    @pytest.mark.asyncio
    async def test_failed_file_events(self, amharic_worker):
        """Test a failing file ends with a single failed event."""
        events = []
        file = SourceFile(name="a.png", content=b"")

        await _runner(amharic_worker).run_batch(
            [file], ProcessingSettings(), on_progress=events.append
        )

        assert [e.stage for e in events] == [Stage.PREPARING, Stage.FAILED]
        assert events[-1].message == "SOURCE_UNAVAILABLE"

    @pytest.mark.asyncio
    async def test_async_callback(self, png_bytes, amharic_worker):
        """Test coroutine callbacks are awaited."""
        stages = []

        async def on_progress(event):
            stages.append(event.stage)

        await _runner(amharic_worker).run_batch(
            [_png(png_bytes)], ProcessingSettings(), on_progress=on_progress
        )

        assert stages[-1] == Stage.DONE

    @pytest.mark.asyncio
    async def test_failing_callback_is_ignored(self, png_bytes, amharic_worker):
        """Test a broken callback does not fail the file."""

        def on_progress(event):
            raise RuntimeError("ui went away")

        batch = await _runner(amharic_worker).run_batch(
            [_png(png_bytes)], ProcessingSettings(), on_progress=on_progress
        )

        assert batch.outcomes[0].status == Stage.DONE

    @pytest.mark.asyncio
    async def test_cancellation(self, png_bytes, amharic_worker):
        """Test files after a cancel request fail as cancelled."""
        cancel = asyncio.Event()

        def on_progress(event):
            if event.stage == Stage.DONE:
                cancel.set()

        files = [_png(png_bytes, "a.png"), _png(png_bytes, "b.png"), _png(png_bytes, "c.png")]
        batch = await _runner(amharic_worker).run_batch(
            files, ProcessingSettings(), on_progress=on_progress, cancel_event=cancel
        )

        assert batch.outcomes[0].status == Stage.DONE
        assert [o.failure.reason for o in batch.outcomes[1:]] == [
            FailureReason.CANCELLED,
            FailureReason.CANCELLED,
        ]
        assert len(amharic_worker.workers) == 1
