"""
Serve the webhook and health API.

    python scripts/run_api.py

Host and port come from API_HOST / API_PORT.
"""
import uvicorn

from sitewise.shared.core.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run("sitewise.main:app", host=settings.API_HOST, port=settings.API_PORT, log_config=None)


if __name__ == "__main__":
    main()
