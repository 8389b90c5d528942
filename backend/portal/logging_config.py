"""
Logging setup for the portal backend.

Every module logs through ``logging.getLogger(__name__)`` and tags its
messages with the operation in brackets, e.g. ``[LIVE_QUERY]``.
"""

import logging
import sys

LOG_FORMAT = '%(asctime)s %(levelname)-7s %(name)s: %(message)s'

_configured = False


def configure_logging(level: str = 'INFO') -> None:
  """Attach a stdout handler to the ``portal`` logger (once per process)."""
  global _configured

  logger = logging.getLogger('portal')
  logger.setLevel(getattr(logging, level.upper(), logging.INFO))

  if _configured:
    return

  handler = logging.StreamHandler(sys.stdout)
  handler.setFormatter(logging.Formatter(LOG_FORMAT))
  logger.addHandler(handler)
  _configured = True
