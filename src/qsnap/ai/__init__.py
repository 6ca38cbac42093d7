"""Gemini integration: client adapter, prompts, analysis and generation."""
