"""Session orchestration daemon for concurrently running coding-agent sessions."""

import logging

__version__ = "0.3.0"

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = ["__version__"]
