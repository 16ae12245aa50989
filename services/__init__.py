"""Service modules for the AI chat application."""

__all__ = ["ai_chat"]
