#!/usr/bin/env python3
"""Main entry point for Veilguard."""

from veilguard.common.logging import get_logger
from veilguard.common.config import Config

logger = get_logger(__name__)


def main():
    """Start the trust gateway."""
    import uvicorn
    
    config = Config()
    logger.info(f"Veilguard starting in {config.environment.value} mode")
    logger.info(f"Storage backend: {config.storage_backend.value}")
    logger.info(f"Rule tables: {config.thresholds_file}, {config.policies_file}")
    
    uvicorn.run(
        "veilguard.api.gateway:app",
        host=config.api_host,
        port=config.api_port,
        log_level=config.log_level.value.lower(),
    )


if __name__ == "__main__":
    main()
