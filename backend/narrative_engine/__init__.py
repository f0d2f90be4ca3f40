"""Narrative continuity engine for long-form novel generation."""
