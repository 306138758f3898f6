import logging
import os

_ROOT = 'elmlink'
_configured = False


def _configure_root():
    global _configured
    if _configured:
        return
    root = logging.getLogger(_ROOT)
    level = os.environ.get('ELMLINK_LOG_LEVEL', 'WARNING').upper()
    root.setLevel(getattr(logging, level, logging.WARNING))
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(name)s: %(message)s'))
        root.addHandler(handler)
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Return a logger under the `elmlink` hierarchy.

    Level is taken from ELMLINK_LOG_LEVEL the first time any logger is requested.
    """
    _configure_root()
    if not name.startswith(_ROOT):
        name = f'{_ROOT}.{name}'
    return logging.getLogger(name)
