"""
Run the Coinframe API server.

Usage:
    python run_api.py

Host and port come from API_HOST / API_PORT (or PORT on hosted platforms).
"""

import os

import uvicorn

from coinframe.api import create_api_app
from coinframe.config import get_settings
from coinframe.utils.logging import setup_logging


def main():
    """Run the API server."""
    settings = get_settings()
    setup_logging(settings.log_level)

    app = create_api_app(settings)

    port = int(os.environ.get("PORT", os.environ.get("API_PORT", 8000)))
    host = os.environ.get("API_HOST", "0.0.0.0")

    print(f"Starting Coinframe API on {host}:{port}")
    print(f"API docs available at http://{host}:{port}/docs")

    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
