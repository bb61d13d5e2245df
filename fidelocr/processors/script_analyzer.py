"""
Ethiopic script quality analysis.

Scores recognised text token by token, detects the signatures of garbled
OCR output (Latin or digits fused into Ethiopic words, ASCII symbol noise,
runaway repetition) and turns the verdict into a calibrated confidence.
Everything here is pure and deterministic.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from fidelocr.core.config import (
    CONFIDENCE_EXCELLENT_FLOOR,
    CONFIDENCE_FAIR_CEILING,
    CONFIDENCE_GOOD_FLOOR,
    CONFIDENCE_POOR_CEILING,
    CORRUPTED_OVERALL_PENALTY,
    CORRUPTION_CEILINGS,
    CORRUPTION_FLAG_THRESHOLD,
    CORRUPTION_HIGH_THRESHOLD,
    CORRUPTION_MEDIUM_THRESHOLD,
    ETHIOPIC_CLASS,
    PROBLEMATIC_WORD_MAX_CONFIDENCE,
    QUALITY_EXCELLENT_THRESHOLD,
    QUALITY_FAIR_THRESHOLD,
    QUALITY_GOOD_THRESHOLD,
    QUALITY_SIGNATURE_PENALTY,
    SCRIPT_WORD_MIN_RATIO,
)
from fidelocr.models.dto import QualityAssessment
from fidelocr.processors.text_cleanup import (
    AGGRESSIVE_CLEANUP_RULES,
    ASCII_NOISE_CHARS,
    ETHIOPIC_RE,
    MIXED_SCRIPT_RE,
    apply_rules,
    clamp01,
    contains_ethiopic,
)

_ASCII_NOISE_RE = re.compile(f"[{ASCII_NOISE_CHARS}]")
_ASCII_NOISE_RUN_RE = re.compile(f"[{ASCII_NOISE_CHARS}]{{2,}}")
_REPEATED_RE = re.compile(r"(.)\1{4,}")
_INVALID_COMBO_RE = re.compile("[\u12D8-\u12E7]{3,}|[\u1330-\u1337]{3,}")
_UPPER_OR_NUMBER_RUN_RE = re.compile(r"[A-Z0-9]{2,}|[0-9]{3,}")
_DIGITS_IN_WORD_RE = re.compile("[\u1200-\u137F]+[0-9]+|[0-9]+[\u1200-\u137F]+")
_ETHIOPIC_RUN_RE = re.compile(f"[{ETHIOPIC_CLASS}]+")

RELIGIOUS_TERMS = (
    "ጸሎት",
    "ቤተክርስቲያን",
    "እግዚአብሔር",
    "የሱስ",
    "ክርስቶስ",
    "ማርያም",
    "መድኃኔዓለም",
    "ቫቲካን",
    "ምዕራፍ",
    "በዓል",
    "ጾም",
    "ድንግል",
    "ቅዱስ",
    "ቅድስት",
)
_RELIGIOUS_PATTERNS = (
    re.compile("ቤተ.{0,5}ክርስቲያን"),
    re.compile("የሱስ.{0,5}ክርስቶስ"),
    re.compile("ድንግል.{0,5}ማርያም"),
    re.compile("መድኃኔ.{0,5}ዓለም"),
)


@dataclass(frozen=True)
class WordValidation:
    word: str
    is_valid: bool
    confidence: float
    issues: tuple[str, ...] = ()


@dataclass(frozen=True)
class TemplatePolicy:
    """Keyword co-occurrence policy for spotting stock document templates.

    A text resembles the template when at least ``min_groups`` keyword groups
    each have one match. The default policy describes an English invoice.
    """

    anchor: str = r"\bINVOICE\b"
    groups: tuple[str, ...] = (
        r"\b(?:Subtotal|Tax|Total)\b",
        r"\b(?:Qty|Rate|Amount)\b",
    )
    min_groups: int = 2

    def matches(self, text: str) -> bool:
        if not text or not re.search(self.anchor, text, re.IGNORECASE):
            return False
        hits = sum(1 for g in self.groups if re.search(g, text, re.IGNORECASE))
        return hits >= self.min_groups


INVOICE_TEMPLATE = TemplatePolicy()


def tokenize(text: str) -> list[str]:
    return [w for w in (text or "").split() if w]


def is_script_word(word: str) -> bool:
    """True when at least 70% of the token's characters are Ethiopic."""
    word = word.strip()
    if not word:
        return False
    return len(ETHIOPIC_RE.findall(word)) / len(word) >= SCRIPT_WORD_MIN_RATIO


def validate_word(word: str) -> WordValidation:
    """Score a single token for well-formedness as an Ethiopic word."""
    clean = (word or "").strip()
    if not clean:
        return WordValidation(word, False, 0.0, ("Empty word",))
    if not contains_ethiopic(clean):
        return WordValidation(word, True, 0.9)

    issues = []
    confidence = 1.0
    if re.search(r"[a-zA-Z]", clean):
        issues.append("Mixed Ethiopic and Latin scripts")
        confidence -= 0.4
    if re.search(r"[0-9]", clean):
        issues.append("Numbers mixed with Ethiopic text")
        confidence -= 0.3
    if _ASCII_NOISE_RE.search(clean):
        issues.append("Contains ASCII noise characters")
        confidence -= 0.5
    if _REPEATED_RE.search(clean):
        issues.append("Excessive character repetition")
        confidence -= 0.4
    if len(ETHIOPIC_RE.findall(clean)) == 1 and len(clean) > 3:
        issues.append("Single Ethiopic character with noise")
        confidence -= 0.3
    if _INVALID_COMBO_RE.search(clean):
        issues.append("Invalid character combinations")
        confidence -= 0.4

    if len(clean) < 2:
        confidence -= 0.2
    elif len(clean) > 20:
        confidence -= 0.3

    confidence = max(0.0, min(1.0, confidence))
    return WordValidation(
        word, not issues and confidence > 0.6, confidence, tuple(issues)
    )


def corruption_signatures(text: str) -> list[str]:
    signatures = []
    if MIXED_SCRIPT_RE.search(text):
        signatures.append("latin_in_script_word")
    if _DIGITS_IN_WORD_RE.search(text):
        signatures.append("digits_in_script_word")
    if _ASCII_NOISE_RUN_RE.search(text):
        signatures.append("ascii_noise_run")
    if _REPEATED_RE.search(text):
        signatures.append("repeated_characters")
    return signatures


def detect_religious_content(text: str) -> bool:
    if any(term in text for term in RELIGIOUS_TERMS):
        return True
    return any(p.search(text) for p in _RELIGIOUS_PATTERNS)


@dataclass
class _CorruptionScan:
    score: float = 0.0
    problematic: int = 0
    issues: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)


def _scan_corruption(text: str, validations: list[WordValidation]) -> _CorruptionScan:
    scan = _CorruptionScan()
    for v in validations:
        if not v.is_valid or v.confidence < PROBLEMATIC_WORD_MAX_CONFIDENCE:
            scan.problematic += 1
            if v.issues:
                scan.issues.append(f'"{v.word}": {", ".join(v.issues)}')

    scan.score = scan.problematic / len(validations) if validations else 0.0

    if _ASCII_NOISE_RUN_RE.search(text):
        scan.score += 0.3
        scan.issues.append("Multiple ASCII noise characters detected")
        scan.suggestions.append("Remove noise characters (#, ;, :, /, \\, |, etc.)")
    if _UPPER_OR_NUMBER_RUN_RE.search(text):
        scan.score += 0.2
        scan.issues.append("Suspicious uppercase letters or number sequences")
        scan.suggestions.append("Verify if letter/number sequences belong in text")
    if MIXED_SCRIPT_RE.search(text):
        scan.score += 0.3
        scan.issues.append("Mixed scripts within words")
        scan.suggestions.append("Separate Ethiopic and Latin text properly")
    return scan


def _corruption_level(score: float) -> str:
    if score < CORRUPTION_MEDIUM_THRESHOLD:
        return "low"
    if score < CORRUPTION_HIGH_THRESHOLD:
        return "medium"
    return "high"


def _quality_bucket(score: float) -> str:
    if score >= QUALITY_EXCELLENT_THRESHOLD:
        return "excellent"
    if score >= QUALITY_GOOD_THRESHOLD:
        return "good"
    if score >= QUALITY_FAIR_THRESHOLD:
        return "fair"
    return "poor"


def assess(text: str) -> QualityAssessment:
    """Derive the quality and corruption verdict for ``text``.

    Quality is the share of well-formed Ethiopic tokens among all tokens,
    reduced for every corruption signature present. Corruption combines the
    share of problematic tokens with whole-text noise indicators.
    """
    words = tokenize(text)
    if not words:
        return QualityAssessment(
            overall_quality="poor",
            quality_score=0.0,
            corruption_level="low",
            corruption_score=0.0,
            is_corrupted=False,
        )

    validations = [validate_word(w) for w in words]
    script_words = [v for v in validations if is_script_word(v.word)]
    well_formed = [v for v in script_words if v.is_valid]
    signatures = corruption_signatures(text)

    quality_score = len(well_formed) / len(words)
    quality_score = max(0.0, quality_score - QUALITY_SIGNATURE_PENALTY * len(signatures))

    scan = _scan_corruption(text, validations)
    level = _corruption_level(scan.score)
    suggestions = list(scan.suggestions)
    if level == "high":
        suggestions.append("Consider re-scanning the document with higher quality settings")
        suggestions.append("Try using a different OCR engine")
    elif level == "medium":
        suggestions.append("Manual review and correction recommended")

    return QualityAssessment(
        overall_quality=_quality_bucket(quality_score),
        quality_score=round(quality_score, 4),
        corruption_level=level,
        corruption_score=round(scan.score, 4),
        is_corrupted=scan.score > CORRUPTION_FLAG_THRESHOLD,
        word_count=len(words),
        script_word_count=len(script_words),
        well_formed_word_count=len(well_formed),
        problematic_word_count=scan.problematic,
        signatures=signatures,
        issues=scan.issues,
        suggestions=suggestions,
        religious_content=detect_religious_content(text),
    )


def adjust_confidence(raw: Any, assessment: QualityAssessment) -> float:
    """Calibrate a provider-reported confidence against the script verdict.

    Quality floors and ceilings apply first; corruption ceilings apply last
    and therefore win when both constrain the value. The result is always
    within [0, 1], whatever ``raw`` is.
    """
    confidence = clamp01(raw)

    quality = assessment.overall_quality
    if quality == "poor":
        confidence = min(confidence, CONFIDENCE_POOR_CEILING)
    elif quality == "fair":
        confidence = min(confidence, CONFIDENCE_FAIR_CEILING)
    elif quality == "good":
        confidence = max(confidence, CONFIDENCE_GOOD_FLOOR)
    elif quality == "excellent":
        confidence = max(confidence, CONFIDENCE_EXCELLENT_FLOOR)

    if assessment.is_corrupted:
        confidence = min(confidence, CORRUPTION_CEILINGS[assessment.corruption_level])

    return clamp01(confidence)


def suggest_word_corrections(word: str) -> list[str]:
    """Candidate repairs for a problematic token, best first."""
    validation = validate_word(word)
    suggestions = []
    if "Mixed Ethiopic and Latin scripts" in validation.issues:
        match = _ETHIOPIC_RUN_RE.search(word)
        if match and match.group(0) != word:
            suggestions.append(match.group(0))
    if "Contains ASCII noise characters" in validation.issues:
        cleaned = _ASCII_NOISE_RE.sub("", word)
        if cleaned and cleaned != word:
            suggestions.append(cleaned)
    if "Numbers mixed with Ethiopic text" in validation.issues:
        cleaned = re.sub(r"[0-9]", "", word)
        if cleaned and cleaned != word:
            suggestions.append(cleaned)
    return suggestions


def _grade(score: float) -> str:
    if score >= 0.9:
        return "A"
    if score >= 0.8:
        return "B"
    if score >= 0.7:
        return "C"
    if score >= 0.6:
        return "D"
    return "F"


def build_quality_report(
    text: str, assessment: QualityAssessment, max_corrections: int = 10
) -> dict[str, Any]:
    """Summarise an assessment into the diagnostic block attached to cloud results."""
    overall = max(
        0.0,
        assessment.quality_score
        - (CORRUPTED_OVERALL_PENALTY if assessment.is_corrupted else 0.0),
    )

    recommendations = []
    if overall < 0.7:
        recommendations.append("Consider re-scanning the document with higher quality settings")
    if assessment.is_corrupted:
        recommendations.append("Manual review and correction required for corrupted sections")
    if assessment.problematic_word_count > assessment.word_count * 0.3:
        recommendations.append(
            "High number of problematic words detected - verify OCR engine settings"
        )

    corrections = {}
    for word in tokenize(text):
        if len(corrections) >= max_corrections:
            break
        candidates = suggest_word_corrections(word)
        if candidates:
            corrections[word] = candidates

    _, cleanup_rules = apply_rules(text, AGGRESSIVE_CLEANUP_RULES)

    return {
        "overall_score": round(overall, 4),
        "grade": _grade(overall),
        "overall_quality": assessment.overall_quality,
        "corruption_level": assessment.corruption_level,
        "is_corrupted": assessment.is_corrupted,
        "word_count": assessment.word_count,
        "script_word_count": assessment.script_word_count,
        "problematic_word_count": assessment.problematic_word_count,
        "religious_content": assessment.religious_content,
        "signatures": assessment.signatures,
        "recommendations": recommendations,
        "corrections": corrections,
        "available_cleanup": cleanup_rules,
    }
