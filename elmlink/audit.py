import json
import os
import time
from pathlib import Path

from .logger import get_logger

logger = get_logger(__name__)


def _audit_path() -> Path:
    env = os.environ.get('ELMLINK_AUDIT_LOG')
    if env:
        p = Path(env)
    else:
        p = Path.cwd() / 'logs' / 'elmlink-audit.log'
    p.parent.mkdir(parents=True, exist_ok=True)
    return p


def audit_write(action: str, details: dict) -> bool:
    """Append an audit entry for an action that changes vehicle state.

    Returns False if the entry could not be written; the action itself is
    never blocked by a failing audit log.
    """
    entry = {'ts': time.time(), 'action': action, 'details': details}
    try:
        p = _audit_path()
        with p.open('a', encoding='utf-8') as f:
            f.write(json.dumps(entry, default=str) + '\n')
    except OSError as e:
        logger.warning('Audit entry for %s not written: %s', action, e)
        return False
    return True
