"""
Text cleanup rules for recognised Ethiopic text.

Each rule is a pure ``str -> str`` function with a descriptive name. Rules
are composed into fixed, ordered pipelines (ETHIOPIC_PUNCTUATION_RULES,
LOCAL_CLEANUP_RULES) and applied with ``apply_rules``, which also reports
which rules changed the text so the change log can be attached to results.
"""

from __future__ import annotations

import re
from typing import Any, Callable, Iterable

from fidelocr.core.config import ETHIOPIC_CLASS, NON_NUMERIC_CONFIDENCE

CleanupRule = Callable[[str], str]

ETHIOPIC_RE = re.compile(f"[{ETHIOPIC_CLASS}]")
_LETTER = "[\u1200-\u137F]"
_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)
_LEADING_JSON_TAG_RE = re.compile(r"^json\s*", re.IGNORECASE)
ASCII_NOISE_CHARS = r"#;:/\\|`~^*_=+"
MIXED_SCRIPT_RE = re.compile(r"([\u1200-\u137F]+)[a-zA-Z]+([\u1200-\u137F]*)")

_LANGUAGE_NAMES = {
    "english": "en",
    "french": "fr",
    "german": "de",
    "spanish": "es",
    "chinese": "zh",
    "japanese": "ja",
    "korean": "ko",
    "arabic": "ar",
    "portuguese": "pt",
    "russian": "ru",
    "italian": "it",
    "amharic": "am",
    "somali": "so",
    "tigrinya": "ti",
    "hindi": "hi",
}


def contains_ethiopic(text: str) -> bool:
    return bool(text) and ETHIOPIC_RE.search(text) is not None


def count_ethiopic(text: str) -> int:
    return len(ETHIOPIC_RE.findall(text or ""))


def ethiopic_density(text: str) -> float:
    """Share of Ethiopic characters among non-whitespace characters."""
    visible = re.sub(r"\s", "", text or "")
    if not visible:
        return 0.0
    return count_ethiopic(visible) / len(visible)


def clamp01(value: Any) -> float:
    """Coerce to float in [0, 1]; non-numeric input yields 0.5."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return NON_NUMERIC_CONFIDENCE
    if number != number:  # NaN
        return NON_NUMERIC_CONFIDENCE
    return max(0.0, min(1.0, number))


def normalize_lang_code(code: Any) -> str:
    """Map language names and regional tags to ISO 639-1 codes."""
    if not code or not isinstance(code, str):
        return "unknown"
    c = code.strip().lower()
    if c in _LANGUAGE_NAMES:
        return _LANGUAGE_NAMES[c]
    if re.fullmatch(r"[a-z]{2}(-[a-z]{2})?", c):
        return c[:2]
    return "unknown"


def strip_fences(text: str) -> str:
    """Return the content of a markdown fence, or the text without fence marks."""
    match = _FENCE_RE.search(text or "")
    if match and match.group(1):
        return match.group(1).strip()
    return _LEADING_JSON_TAG_RE.sub("", (text or "").replace("```", "").strip()).strip()


# =============================================================================
# Ethiopic punctuation rules
# =============================================================================


def colon_to_wordspace(text: str) -> str:
    return re.sub(rf"({_LETTER})\s*:\s*({_LETTER})", "\\1\u1361\\2", text)


def comma_to_ethiopic_comma(text: str) -> str:
    return re.sub(rf"({_LETTER})\s*,\s*({_LETTER})", "\\1\u1363\\2", text)


def period_to_full_stop(text: str) -> str:
    return re.sub(rf"({_LETTER})\s*\.(?=\s|$)", "\\1\u1362", text)


def quotes_to_guillemets(text: str) -> str:
    return re.sub(
        rf'"\s*({_LETTER}[^"\n]{{0,200}}?{_LETTER})\s*"', "\u00ab\\1\u00bb", text
    )


def tighten_ethiopic_punctuation(text: str) -> str:
    return re.sub(r"\s*([\u1361\u1362\u1363])\s*", r"\1", text)


# =============================================================================
# Local engine cleanup rules
# =============================================================================


def remove_zero_width(text: str) -> str:
    return re.sub(r"[\u200B-\u200D\uFEFF]", "", text)


def space_out_ascii_noise(text: str) -> str:
    """Replace ASCII noise wedged between Ethiopic letters with a space."""
    return re.sub(rf"({_LETTER})[{ASCII_NOISE_CHARS}]+({_LETTER})", r"\1 \2", text)


def drop_latin_inside_words(text: str) -> str:
    return MIXED_SCRIPT_RE.sub(r"\1\2", text)


def collapse_spaces(text: str) -> str:
    return re.sub(r" {2,}", " ", text)


def strip_trailing_spaces(text: str) -> str:
    return re.sub(r" +$", "", text, flags=re.MULTILINE)


ETHIOPIC_PUNCTUATION_RULES: tuple[CleanupRule, ...] = (
    colon_to_wordspace,
    comma_to_ethiopic_comma,
    period_to_full_stop,
    quotes_to_guillemets,
    tighten_ethiopic_punctuation,
)

LOCAL_CLEANUP_RULES: tuple[CleanupRule, ...] = (
    remove_zero_width,
    collapse_spaces,
    strip_trailing_spaces,
)

AGGRESSIVE_CLEANUP_RULES: tuple[CleanupRule, ...] = (
    remove_zero_width,
    space_out_ascii_noise,
    drop_latin_inside_words,
    collapse_spaces,
    strip_trailing_spaces,
)


def apply_rules(text: str, rules: Iterable[CleanupRule]) -> tuple[str, list[str]]:
    """Run ``rules`` in order; return the result and the names of rules that changed it."""
    changed = []
    for rule in rules:
        updated = rule(text)
        if updated != text:
            changed.append(rule.__name__)
            text = updated
    return text, changed


def enforce_ethiopic_punctuation(text: str) -> str:
    if not text:
        return text
    return apply_rules(text, ETHIOPIC_PUNCTUATION_RULES)[0]
