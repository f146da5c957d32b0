"""
Logging setup for front ends.

Core modules only create module loggers; handlers are installed here once by
the CLI or the HTTP service.
"""

import logging
import sys


NOISY_LOGGERS = ("httpx", "httpcore", "urllib3", "trafilatura", "sentence_transformers", "faiss")


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging on stderr with ISO timestamps.

    Args:
        level: Root level name; unknown names fall back to INFO.
    """
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )
    )

    resolved = logging.getLevelName(str(level).upper())
    root_logger.setLevel(resolved if isinstance(resolved, int) else logging.INFO)
    root_logger.addHandler(handler)

    # Third-party request/parse chatter
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
