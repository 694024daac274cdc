"""Context compression: summarize a long session into a seed session."""

from codeloop.compression.compressor import ContextCompressor, render_transcript

__all__ = ["ContextCompressor", "render_transcript"]
