"""Embedding client module for agentmem.

This module provides access to embedding models via Ollama.
"""

from agentmem.llm.client import OllamaClient

__all__ = ["OllamaClient"]
