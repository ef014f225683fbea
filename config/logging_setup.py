"""
Process-wide logging setup.
"""

from __future__ import annotations

import logging
import sys

from config.settings import config


def setup_logging(debug: bool | None = None) -> None:
    """Configure the root logger once; safe to call repeatedly."""
    debug = config.debug if debug is None else debug
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
        stream=sys.stdout,
    )
    for _noisy in ("httpcore", "httpx", "hpack"):
        logging.getLogger(_noisy).setLevel(logging.WARNING)
