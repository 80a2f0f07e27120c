"""
Application Runner

Loads the configuration, creates the FastAPI app and serves it with uvicorn.
"""

import sys
import argparse
import logging

import uvicorn

from llama_manager.core.config import load_config
from llama_manager.main import create_app


# Setup basic logging for startup
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("runner")


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Llama Manager")
    parser.add_argument(
        '-c', '--config',
        type=str,
        default=None,
        help='Path to config JSON file (default: config.json or CONFIG_PATH env var)'
    )
    parser.add_argument(
        '--host',
        type=str,
        default=None,
        help='Override API host'
    )
    parser.add_argument(
        '--port',
        type=int,
        default=None,
        help='Override API port'
    )
    return parser.parse_args()


def main():
    """Main entry point."""
    args = parse_args()

    try:
        logger.info("Loading configuration...")
        config = load_config(args.config)
        if args.host:
            config.api.host = args.host
        if args.port:
            config.api.port = args.port

        logger.info("Creating FastAPI application...")
        app = create_app(config)

        logger.info(f"Starting API Server at {config.api.host}:{config.api.port}")
        uvicorn.run(
            app,
            host=config.api.host,
            port=config.api.port,
            log_level=config.logging.level.lower(),
        )

    except KeyboardInterrupt:
        logger.info("Shutdown requested via KeyboardInterrupt")
    except Exception as e:
        logger.fatal(f"Failed to start application: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
