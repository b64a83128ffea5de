"""Retrieval-augmented quiz generation for securities education."""

__version__ = "0.1.0"
