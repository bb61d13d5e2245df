# =============================================================================
# Script (Ethiopic)
# =============================================================================

ETHIOPIC_CLASS = "\u1200-\u137F\u1380-\u139F\u2D80-\u2DDF"  # Ethiopic, Supplement, Extended
TARGET_LANGUAGE = "am"
TARGET_LANGUAGE_HINTS = frozenset({"am", "amh", "amharic", "ethiopic", "ti", "tir"})
SCRIPT_WORD_MIN_RATIO = 0.7  # share of Ethiopic chars for a token to count as script word
PROBLEMATIC_WORD_MAX_CONFIDENCE = 0.6

# =============================================================================
# Cloud Models
# =============================================================================

DEFAULT_GEMINI_MODEL = "gemini-2.5-pro"
DEFAULT_GEMINI_FALLBACK_MODEL = "gemini-2.5-flash"
GEMINI_LAST_RESORT_MODEL = "gemini-1.5-flash"

DEFAULT_OPENROUTER_MODEL = "google/gemini-2.0-flash-thinking-exp"
OPENROUTER_LAST_RESORT_MODEL = "google/gemini-1.5-flash"

DEFAULT_MAX_OUTPUT_TOKENS = 2048
DEFAULT_TEMPERATURE = 0.7
LOW_TEMPERATURE = 0.0

# =============================================================================
# Confidence
# =============================================================================

LOCAL_BASELINE_CONFIDENCE = 0.8
FALLBACK_RESULT_CONFIDENCE = 0.5  # unparsed model output, before assessment
NON_NUMERIC_CONFIDENCE = 0.5

QUALITY_EXCELLENT_THRESHOLD = 0.9
QUALITY_GOOD_THRESHOLD = 0.75
QUALITY_FAIR_THRESHOLD = 0.5
QUALITY_SIGNATURE_PENALTY = 0.1

CONFIDENCE_POOR_CEILING = 0.4
CONFIDENCE_FAIR_CEILING = 0.6
CONFIDENCE_GOOD_FLOOR = 0.75
CONFIDENCE_EXCELLENT_FLOOR = 0.9

CORRUPTION_FLAG_THRESHOLD = 0.2  # corrupted when the score exceeds this
CORRUPTION_MEDIUM_THRESHOLD = 0.3
CORRUPTION_HIGH_THRESHOLD = 0.6
CORRUPTION_CEILINGS = {"high": 0.3, "medium": 0.5, "low": 0.7}
CORRUPTED_OVERALL_PENALTY = 0.3

# =============================================================================
# Local OCR (Tesseract)
# =============================================================================

TESSERACT_DPI = 300
PSM_SINGLE_COLUMN = 4
PSM_SINGLE_BLOCK = 6
OEM_LSTM_ONLY = 1
LATIN_BLACKLIST = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"
SECOND_PASS_MIN_ETHIOPIC_CHARS = 10
SECOND_PASS_DENSITY_THRESHOLD = 0.6
SECOND_PASS_IMPROVEMENT_FACTOR = 1.1

PREPROCESS_TARGET_WIDTH = 2000
PREPROCESS_MAX_SCALE = 2.0
PREPROCESS_CONTRAST = 1.5
PREPROCESS_THRESHOLD = 140

# =============================================================================
# Image Handling
# =============================================================================

DIRECT_VISION_MIME_TYPES = frozenset({"image/jpeg", "image/png", "image/webp"})
NON_INGESTIBLE_MIME_TYPES = frozenset({"image/tiff", "image/x-tiff"})
NON_INGESTIBLE_EXTENSIONS = frozenset({".tif", ".tiff"})

# =============================================================================
# Progress
# =============================================================================

STAGE_PROGRESS = {
    "preparing": 0.05,
    "routed": 0.15,
    "recognizing": 0.35,
    "parsing": 0.7,
    "assessing": 0.85,
    "done": 1.0,
    "failed": 1.0,
}

# =============================================================================
# Error Handling
# =============================================================================

ERROR_BODY_MAX_CHARS = 200  # Maximum chars from error response bodies
