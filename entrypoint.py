import uvicorn
import os
from logging_config import setup_logging

# Setup logging before importing app
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)

from constants import BROKER_BACKEND, MAX_PARTICIPANTS, SERVICE_NAME
from logging_config import get_logger

logger = get_logger(__name__)


def main():
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", 8000))
    reload = os.getenv("RELOAD", "false").lower() in ("1", "true", "yes")
    logger.info(f"Starting {SERVICE_NAME} on {host}:{port} (backend: {BROKER_BACKEND}, max participants: {MAX_PARTICIPANTS})")
    uvicorn.run("app:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    main()
