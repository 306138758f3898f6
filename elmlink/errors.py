"""Error taxonomy for the adapter link.

Every error carries the command that was being processed (if any) and the
elapsed time in milliseconds so callers can log it without extra bookkeeping.
"""
from typing import Optional


class ElmLinkError(RuntimeError):
    def __init__(self, message: str = '', command: Optional[str] = None, elapsed_ms: Optional[float] = None):
        super().__init__(message)
        self.command = command
        self.elapsed_ms = elapsed_ms

    def __str__(self):
        msg = super().__str__()
        extra = []
        if self.command is not None:
            extra.append(f'command={self.command!r}')
        if self.elapsed_ms is not None:
            extra.append(f'elapsed={self.elapsed_ms:.0f}ms')
        if extra:
            return f"{msg} ({', '.join(extra)})" if msg else ', '.join(extra)
        return msg


class UnsupportedPlatform(ElmLinkError):
    """No usable wireless stack on this host. Not retried."""


class NoAdapterFound(ElmLinkError):
    pass


class ConnectFailed(ElmLinkError):
    pass


class WriteFailed(ElmLinkError):
    pass


class InitializationFailed(ElmLinkError):
    pass


class CommandTimeout(ElmLinkError):
    pass


class NotConnected(ElmLinkError):
    pass


class ParseError(ElmLinkError, ValueError):
    """Adapter reply could not be decoded. Callers treat the value as unavailable."""
