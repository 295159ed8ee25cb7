"""
SDK for genloop.

Provides the Gemini wire client used by the generation pipeline.
"""

from .gemini_client import GeminiClient

__all__ = ["GeminiClient"]
