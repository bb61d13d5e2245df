from __future__ import annotations

SYSTEM_INSTRUCTION_V1 = """You are an OCR engine for Amharic (Ethiopic) documents.
Rules:
- Preserve script exactly as seen. Do NOT translate, transliterate, or romanize.
- Preserve Ethiopic punctuation: ፣ (comma), ፡ (word separator), ። (full stop).
- Preserve guillemets « … » exactly. Do NOT replace with ASCII quotes.
- Output ONLY JSON (no markdown fences) per schema; no extra fields.
- If unsure, keep characters as-is rather than substituting ASCII.
Examples:
  "ቫቲካን፡" stays as "ቫቲካን፡" (not "ቫቲካን:")
  «…» stays as «…» (not "…")
"""

SCHEMA_DESCRIPTION = (
    "extractedText (string), layoutPreserved (string), "
    'detectedLanguage (ISO 639-1 string or "unknown"), confidence (number 0..1), '
    "documentType (string), layoutAnalysis { textBlocks:number, tables:number, "
    'images:number, columns:number, complexity:"low"|"medium"|"high" }, '
    "metadata { wordCount:number, characterCount:number }"
)

_JSON_EXAMPLE = (
    '{"extractedText": "...", "layoutPreserved": "...", "detectedLanguage": "%s", '
    '"documentType": "%s", "confidence": 0.5, "layoutAnalysis": {"textBlocks": 1, '
    '"tables": 0, "images": 0, "columns": 1, "complexity": "medium"}, '
    '"metadata": {"wordCount": 0, "characterCount": 0}}'
)

STRICT_SCHEMA_PROMPT_V1 = (
    "Previous output was not valid per schema. Output ONLY valid JSON matching "
    "the schema exactly. Do not include markdown fences or commentary.\n"
    "Schema fields: " + SCHEMA_DESCRIPTION
)

SCRIPT_FOCUS_PROMPT_V1 = (
    "Ethiopic glyphs were detected or Amharic was forced. Your previous output "
    "lacked Ethiopic characters and/or resembled an English invoice template. "
    "Re-output ONLY JSON per schema. Ensure 'extractedText' and 'layoutPreserved' "
    "contain the exact Ethiopic characters as seen, without transliteration or "
    "translation. Do NOT fabricate fields (e.g., invoices). If text is unreadable, "
    'return empty strings and lower confidence. Set detectedLanguage to "am" '
    "unless clearly unknown.\nSchema fields: " + SCHEMA_DESCRIPTION
)


def build_recognition_prompt(script_pinned: bool) -> str:
    if script_pinned:
        return (
            "Extract text from this image. The content is in Amharic (Ethiopic script). "
            "Provide only the extracted text in Amharic, without any English or other "
            "languages. If no text is found, return empty strings. Output as JSON: "
            + _JSON_EXAMPLE % ("am", "Unknown")
            + "\nInstructions: Keep all characters in Ethiopic as seen. Do NOT "
            "transliterate or translate. Do NOT output Latin letters except JSON keys."
        )
    return (
        "Extract text from this image. Detect the language and document type. "
        "Output as JSON: "
        + _JSON_EXAMPLE % ("...", "...")
        + "\nIf the text is in Amharic, ensure extractedText is in Amharic script. "
        "Do not hallucinate or add extra content."
    )
