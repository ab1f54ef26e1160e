"""Logging configuration for the rover CLI."""

import logging

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(verbose: bool = False) -> None:
    """Install the root handler. Only the CLI entry point calls this."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        force=True,
    )
    # asyncio is chatty at DEBUG
    logging.getLogger("asyncio").setLevel(logging.WARNING)
