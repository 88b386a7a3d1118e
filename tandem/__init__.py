"""tandem: a conversational coding assistant driven by LLM tool calls."""

from .session import Result, Session

__all__ = ["Session", "Result"]
