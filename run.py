"""
Run the GitHub stats API server.

    python run.py

Host, port and log level come from the environment (see ghstats.config).
"""

import uvicorn

from ghstats.config import settings


def main() -> None:
    """Run the API server."""
    uvicorn.run(
        "ghstats.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
