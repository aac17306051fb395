"""Conversational assistant back-end with a streaming completion pipeline."""

__version__ = "1.0.0"
