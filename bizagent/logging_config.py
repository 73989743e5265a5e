from __future__ import annotations

import logging
import sys


def configure_logging(level: str = "INFO") -> None:
    """Configure basic structured logging for the backend.

    Logs go to stdout through a single formatter that includes level and
    logger name. Event names are snake_case and context travels in
    ``extra`` so a log shipper can pick the fields up.
    """
    root = logging.getLogger()
    if root.handlers:
        # Assume logging already configured.
        return

    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    handler.setFormatter(formatter)
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    # The Google discovery client is chatty at INFO.
    logging.getLogger("googleapiclient.discovery_cache").setLevel(logging.ERROR)
