"""Compress, chunk and analyze a large codebase with a remote LLM under a token budget."""

__version__ = "0.1.0"
