"""
Stockflow Simulation Engine
Serves the HTTP API with uvicorn; logging is configured when stockflow.api is imported
"""

import uvicorn

from stockflow.api import app
from stockflow.config import get_settings
from stockflow.utils.logging_config import get_logger

logger = get_logger(__name__)


def main() -> None:
    settings = get_settings()
    logger.info(
        f"Starting Stockflow Simulation Engine (env={settings.env}, "
        f"log_level={settings.log_level}, log_format={settings.log_format})"
    )
    uvicorn.run(app, host="0.0.0.0", port=8000, log_config=None)


if __name__ == "__main__":
    main()
