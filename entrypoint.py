import os

import uvicorn

from logging_config import setup_logging, get_logger

# Logging has to be configured before the app module builds its logger
setup_logging(log_level=os.getenv("LOG_LEVEL", "DEBUG"), log_file=os.getenv("LOG_FILE", None))

from constants import STORAGE_BACKEND  # noqa: E402

logger = get_logger(__name__)


def main():
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", 8000))
    reload = os.getenv("RELOAD", "false").lower() in ("1", "true", "yes")
    logger.info(f"Starting chat server on {host}:{port} with {STORAGE_BACKEND} storage")
    uvicorn.run("app:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    main()
