"""Transport contract shared by the BLE, serial and emulator links.

A transport owns exactly one bidirectional byte channel. Commands go out via
`send`; inbound notification chunks are handed, in arrival order, to the one
consumer registered with `subscribe`. Chunks are not reassembled here: a
single adapter reply may arrive split over many notifications.
"""
from typing import Callable, Iterable, Optional

from .config import LinkConfig
from .logger import get_logger
from .models import DeviceHandle

logger = get_logger(__name__)

BytesCallback = Callable[[bytes], None]


class Transport:
    kind = 'base'

    def __init__(self):
        self._on_bytes: Optional[BytesCallback] = None
        self._on_disconnect: Optional[Callable[[], None]] = None

    @property
    def is_open(self) -> bool:
        raise NotImplementedError

    async def discover(self, name_prefixes: Optional[Iterable[str]] = None) -> DeviceHandle:
        raise NotImplementedError

    async def open(self, handle: DeviceHandle) -> None:
        raise NotImplementedError

    async def send(self, data: bytes) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError

    def subscribe(self, on_bytes: BytesCallback) -> None:
        """Register the single notification consumer (replaces any previous one)."""
        self._on_bytes = on_bytes

    def set_disconnect_handler(self, handler: Optional[Callable[[], None]]) -> None:
        """Called when the link drops without `close()` being requested."""
        self._on_disconnect = handler

    def _deliver(self, chunk: bytes) -> None:
        if not chunk:
            return
        if self._on_bytes is None:
            logger.debug('%s: dropping %d bytes, no subscriber', self.kind, len(chunk))
            return
        self._on_bytes(bytes(chunk))

    def _link_lost(self) -> None:
        logger.warning('%s: link lost', self.kind)
        if self._on_disconnect is not None:
            self._on_disconnect()


def create_transport(config: LinkConfig) -> Transport:
    """Build the transport named by `config.transport`."""
    if config.transport == 'ble':
        from .ble_transport import BleTransport
        return BleTransport(scan_timeout=config.scan_timeout, address=config.device)
    if config.transport == 'serial':
        from .serial_comm import SerialTransport
        return SerialTransport(device=config.device, baud=config.baud)
    if config.transport == 'emulator':
        from .emulator import EmulatorTransport
        return EmulatorTransport()
    raise ValueError(f'unknown transport {config.transport!r}')
