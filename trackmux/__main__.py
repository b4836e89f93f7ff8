"""Serve the trackmux API with its worker and resync scheduler."""

import logging

import uvicorn

from trackmux.api.app import create_app
from trackmux.common.logging import configure_logging
from trackmux.models.config import EngineConfig

logger = logging.getLogger(__name__)


def main() -> None:
    config = EngineConfig.from_env()
    configure_logging(level=config.log_level)
    if not config.provider.api_key:
        logger.warning("TRACKMUX_PROVIDER_API_KEY is not set; provider calls will fail")
    app = create_app(config=config, run_worker=True)
    logger.info("Serving trackmux on %s:%d (db=%s)", config.host, config.port, config.db_path)
    uvicorn.run(app, host=config.host, port=config.port, log_level=config.log_level.lower())


if __name__ == "__main__":
    main()
