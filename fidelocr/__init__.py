"""Amharic/Ethiopic OCR orchestration."""
