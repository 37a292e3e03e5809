#!/usr/bin/env python3
"""
Script to run the lookup gateway API.
"""

import argparse
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from subject_lookup.core.config import init_config

logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the subject lookup gateway")
    parser.add_argument("--env-file", default=None, help="Path to a .env file")
    parser.add_argument("--config", type=Path, default=None, help="Path to a YAML config file")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)

    # Load environment variables from .env file
    load_dotenv(args.env_file)

    try:
        config = init_config(env_file=args.env_file, yaml_config_path=args.config)
    except ValueError as e:
        print(f"Failed to initialize configuration: {e}")
        print("\nPlease ensure the following environment variables are set:")
        print("  - PORTAL_USERNAME")
        print("  - PORTAL_PASSWORD")
        print("\nOr create a .env file with these values.")
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, config.monitoring.log_level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if config.api.workers > 1:
        # Every worker would run its own browser and portal session
        logger.warning("API_WORKERS > 1 is not supported, running a single worker")

    import uvicorn

    logger.info(f"Starting API server on {config.api.host}:{config.api.port}")
    uvicorn.run(
        "subject_lookup.api.main:create_app",
        factory=True,
        host=config.api.host,
        port=config.api.port,
        reload=config.api.reload,
        workers=1,
        log_level=config.monitoring.log_level.lower()
    )


if __name__ == "__main__":
    main()
