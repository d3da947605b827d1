"""
Shared helpers.
"""
import logging
import os

from ulid import ULID


LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format=LOG_FORMAT,
)


def get_logger(name: str) -> logging.Logger:
    """Return a module logger under the scopeauth namespace."""
    if not name.startswith("scopeauth"):
        name = f"scopeauth.{name}"
    return logging.getLogger(name)


def generate_ulid() -> str:
    """Generate a new ULID string."""
    return str(ULID())
