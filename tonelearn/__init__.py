"""Tone learning: retrieve a user's own sent mail as few-shot examples and
maintain per-relationship writing style profiles."""

__version__ = "0.1.0"
