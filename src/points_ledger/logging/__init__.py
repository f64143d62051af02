from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def setup_logging(level: str = "INFO") -> None:
    """Configure root logging for the service process."""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    # The provider SDK is chatty at INFO.
    logging.getLogger("stripe").setLevel(logging.WARNING)


__all__ = ["LOG_FORMAT", "setup_logging"]
