"""Entrypoint for running the AI chat service with uvicorn."""

from .app import app, get_app

__all__ = ["app", "get_app"]


if __name__ == "__main__":  # pragma: no cover
    import uvicorn

    uvicorn.run(
        "services.ai_chat.main:app",
        host="0.0.0.0",
        port=8004,
        reload=True,
    )
