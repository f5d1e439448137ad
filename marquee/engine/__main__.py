"""CLI entry point for launching the engine API with Uvicorn."""
import logging

import uvicorn

from .app import create_app
from .settings import load_settings


def main() -> None:
    """Start the engine API with its scheduler."""

    logging.basicConfig(level=logging.INFO)
    settings = load_settings()
    uvicorn.run(create_app(settings), host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    main()
