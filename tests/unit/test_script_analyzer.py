"""Unit tests for Ethiopic script quality analysis."""

import pytest

from fidelocr.models.dto import QualityAssessment
from fidelocr.processors.script_analyzer import (
    INVOICE_TEMPLATE,
    TemplatePolicy,
    adjust_confidence,
    assess,
    build_quality_report,
    corruption_signatures,
    detect_religious_content,
    is_script_word,
    suggest_word_corrections,
    validate_word,
)

CLEAN_TEXT = "ሰላም ለዓለም ነው"
CORRUPTED_TEXT = "ሰላምabc ዓለም##ነው 12345"
INVOICE_TEXT = "INVOICE\nQty Rate Amount\nSubtotal Tax Total"


def _assessment(quality: str, corrupted: bool = False, level: str = "low") -> QualityAssessment:
    return QualityAssessment(
        overall_quality=quality,
        quality_score=0.5,
        corruption_level=level,
        corruption_score=0.5 if corrupted else 0.0,
        is_corrupted=corrupted,
    )


class TestWordValidation:
    """Tests for token-level checks."""

    def test_script_word_ratio(self):
        """Test a token needs 70% Ethiopic characters to count."""
        assert is_script_word("ሰላም") is True
        assert is_script_word("ሰላምab") is False
        assert is_script_word("   ") is False

    def test_clean_word_is_valid(self):
        """Test a well-formed Ethiopic word passes."""
        result = validate_word("ሰላም")

        assert result.is_valid is True
        assert result.confidence == 1.0
        assert result.issues == ()

    def test_latin_word_is_neutral(self):
        """Test non-Ethiopic tokens are not penalised."""
        result = validate_word("hello")

        assert result.is_valid is True
        assert result.confidence == 0.9

    def test_mixed_script_word(self):
        """Test Latin inside an Ethiopic word is flagged."""
        result = validate_word("ሰላምabc")

        assert result.is_valid is False
        assert result.confidence == pytest.approx(0.6)
        assert "Mixed Ethiopic and Latin scripts" in result.issues

    def test_empty_word(self):
        """Test empty token is invalid with zero confidence."""
        result = validate_word("")

        assert result.is_valid is False
        assert result.confidence == 0.0

    def test_corrections(self):
        """Test repairs strip the offending characters."""
        assert suggest_word_corrections("ሰላምabc") == ["ሰላም"]
        assert suggest_word_corrections("ሰላም##") == ["ሰላም"]
        assert suggest_word_corrections("ሰላም12") == ["ሰላም"]
        assert suggest_word_corrections("ሰላም") == []


class TestSignatures:
    """Tests for whole-text indicators."""

    def test_corruption_signatures(self):
        """Test digit fusion and character runs are detected."""
        assert corruption_signatures("ሰላም12 aaaaa") == [
            "digits_in_script_word",
            "repeated_characters",
        ]

    def test_clean_text_has_no_signatures(self):
        """Test clean text yields no signatures."""
        assert corruption_signatures(CLEAN_TEXT) == []

    def test_religious_content(self):
        """Test religious vocabulary is detected with spacing variants."""
        assert detect_religious_content("ቤተ ክርስቲያን") is True
        assert detect_religious_content("ቅዱስ ገብርኤል") is True
        assert detect_religious_content(CLEAN_TEXT) is False

    def test_invoice_template(self):
        """Test template needs the anchor and enough keyword groups."""
        assert INVOICE_TEMPLATE.matches(INVOICE_TEXT) is True
        assert INVOICE_TEMPLATE.matches("INVOICE Total") is False
        assert INVOICE_TEMPLATE.matches("Subtotal Qty") is False
        assert INVOICE_TEMPLATE.matches("") is False

    def test_custom_template(self):
        """Test template policy is configurable."""
        receipt = TemplatePolicy(anchor=r"\bRECEIPT\b", groups=(r"\bCash\b",), min_groups=1)

        assert receipt.matches("RECEIPT Cash 10") is True
        assert receipt.matches(INVOICE_TEXT) is False


class TestAssess:
    """Tests for the quality verdict."""

    def test_clean_text(self):
        """Test clean Amharic is excellent and not corrupted."""
        result = assess(CLEAN_TEXT)

        assert result.overall_quality == "excellent"
        assert result.quality_score == 1.0
        assert result.corruption_level == "low"
        assert result.is_corrupted is False
        assert result.word_count == 3
        assert result.well_formed_word_count == 3

    def test_corrupted_text(self):
        """Test garbled output is poor with high corruption."""
        result = assess(CORRUPTED_TEXT)

        assert result.overall_quality == "poor"
        assert result.corruption_level == "high"
        assert result.is_corrupted is True
        assert result.problematic_word_count == 2
        assert "latin_in_script_word" in result.signatures
        assert "ascii_noise_run" in result.signatures
        assert "Try using a different OCR engine" in result.suggestions

    def test_empty_text(self):
        """Test empty text is poor but not corrupted."""
        result = assess("")

        assert result.overall_quality == "poor"
        assert result.corruption_level == "low"
        assert result.is_corrupted is False

    def test_latin_text(self):
        """Test Latin-only text is poor and sits on the corruption boundary."""
        result = assess(INVOICE_TEXT)

        assert result.overall_quality == "poor"
        assert result.corruption_score == pytest.approx(0.2)
        assert result.is_corrupted is False


class TestAdjustConfidence:
    """Tests for confidence calibration."""

    def test_excellent_raises_floor(self):
        """Test excellent quality lifts confidence to 0.9."""
        assert adjust_confidence(0.5, assess(CLEAN_TEXT)) == pytest.approx(0.9)

    def test_corruption_ceiling_wins(self):
        """Test corrupted poor text is capped at the high-corruption ceiling."""
        assert adjust_confidence(0.95, assess(CORRUPTED_TEXT)) == pytest.approx(0.3)

    def test_poor_ceiling(self):
        """Test poor quality caps confidence."""
        assert adjust_confidence(0.9, assess(INVOICE_TEXT)) == pytest.approx(0.4)
        assert adjust_confidence(0.1, assess(INVOICE_TEXT)) == pytest.approx(0.1)

    def test_fair_and_good(self):
        """Test fair caps and good lifts confidence."""
        assert adjust_confidence(0.9, _assessment("fair")) == pytest.approx(0.6)
        assert adjust_confidence(0.2, _assessment("good")) == pytest.approx(0.75)

    def test_corruption_applied_after_quality(self):
        """Test the corruption ceiling overrides a quality floor."""
        result = adjust_confidence(0.2, _assessment("excellent", corrupted=True, level="medium"))

        assert result == pytest.approx(0.5)

    @pytest.mark.parametrize("raw", ["high", None, float("nan"), 7, -3])
    def test_always_in_unit_interval(self, raw):
        """Test any raw input yields a value in [0, 1]."""
        result = adjust_confidence(raw, _assessment("fair"))

        assert 0.0 <= result <= 1.0


class TestQualityReport:
    """Tests for the diagnostic block."""

    def test_clean_report(self):
        """Test clean text earns grade A with nothing to fix."""
        report = build_quality_report(CLEAN_TEXT, assess(CLEAN_TEXT))

        assert report["grade"] == "A"
        assert report["overall_score"] == 1.0
        assert report["recommendations"] == []
        assert report["corrections"] == {}
        assert report["available_cleanup"] == []

    def test_corrupted_report(self):
        """Test corrupted text gets corrections and cleanup hints."""
        report = build_quality_report(CORRUPTED_TEXT, assess(CORRUPTED_TEXT))

        assert report["grade"] == "F"
        assert report["is_corrupted"] is True
        assert report["corrections"] == {"ሰላምabc": ["ሰላም"], "ዓለም##ነው": ["ዓለምነው"]}
        assert "space_out_ascii_noise" in report["available_cleanup"]
        assert "drop_latin_inside_words" in report["available_cleanup"]
        assert len(report["recommendations"]) == 3

    def test_corrections_limited(self):
        """Test the corrections map is bounded."""
        text = " ".join(f"ሰላም{c}" for c in "abcdefgh")
        report = build_quality_report(text, assess(text), max_corrections=3)

        assert len(report["corrections"]) == 3
