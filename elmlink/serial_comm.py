import asyncio
import os
import threading
from typing import Iterable, Optional

import serial
from serial.tools import list_ports

from .config import DEFAULT_NAME_PREFIXES
from .errors import ConnectFailed, NoAdapterFound, WriteFailed
from .logger import get_logger
from .models import DeviceHandle
from .transport import Transport

logger = get_logger(__name__)


class SerialTransport(Transport):
    """ELM327 over a serial port: USB cable or a bound Bluetooth RFCOMM tty.

    pyserial is blocking, so a reader thread pulls bytes and hands them to the
    event loop with `call_soon_threadsafe`; writes run in the default executor.
    """
    kind = 'serial'

    def __init__(self, device: Optional[str] = None, baud: int = 38400, timeout: float = 0.1,
                 retries: int = 1, backoff: float = 0.1):
        super().__init__()
        self.device = device
        self.baud = int(baud)
        self.timeout = float(timeout)
        self.retries = int(retries)
        self.backoff = float(backoff)
        self._ser = None
        self._reader: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def is_open(self) -> bool:
        return bool(self._ser is not None and getattr(self._ser, 'is_open', False))

    async def discover(self, name_prefixes: Optional[Iterable[str]] = None) -> DeviceHandle:
        # priority: explicit device, env ELMLINK_DEVICE, described adapter, first ttyUSB/rfcomm
        dev = self.device or os.environ.get('ELMLINK_DEVICE')
        if dev:
            if dev.startswith('/dev/') and not os.path.exists(dev):
                raise NoAdapterFound(f'serial device {dev} does not exist')
            return DeviceHandle(address=dev, name=dev, kind='serial')

        prefixes = tuple(p.upper() for p in (name_prefixes or DEFAULT_NAME_PREFIXES))
        ports = list(list_ports.comports())
        for p in ports:
            text = ' '.join(filter(None, [p.description, p.product, p.manufacturer])).upper()
            if any(pref in text for pref in prefixes):
                return DeviceHandle(address=p.device, name=p.description, kind='serial', raw=p)
        for p in ports:
            if os.path.basename(p.device).startswith(('ttyUSB', 'rfcomm')):
                return DeviceHandle(address=p.device, name=p.description, kind='serial', raw=p)
        raise NoAdapterFound('no serial adapter found; set ELMLINK_DEVICE or pass a device path')

    async def open(self, handle: DeviceHandle) -> None:
        if self.is_open:
            return
        self._loop = asyncio.get_running_loop()
        logger.debug('Opening serial %s @%d', handle.address, self.baud)
        try:
            self._ser = serial.Serial(handle.address, self.baud, timeout=self.timeout)
        except (serial.SerialException, OSError) as e:
            raise ConnectFailed(f'cannot open {handle.address}: {e}') from e
        self.device = handle.address
        self._stop.clear()
        self._reader = threading.Thread(target=self._read_loop, name=f'elmlink-serial-{handle.address}', daemon=True)
        self._reader.start()

    def _read_loop(self):
        while not self._stop.is_set():
            try:
                chunk = self._ser.read(self._ser.in_waiting or 1)
            except (serial.SerialException, OSError, TypeError, AttributeError) as e:
                if not self._stop.is_set():
                    logger.debug('serial read error: %s', e)
                    self._post(self._link_lost)
                break
            if chunk:
                self._post(self._deliver, chunk)

    def _post(self, fn, *args):
        try:
            self._loop.call_soon_threadsafe(fn, *args)
        except RuntimeError:
            # loop already closed
            self._stop.set()

    def _write(self, data: bytes):
        self._ser.write(data)
        self._ser.flush()

    async def send(self, data: bytes) -> None:
        if not self.is_open:
            raise WriteFailed('serial port not open')
        attempt = 0
        last_exc = None
        loop = asyncio.get_running_loop()
        while attempt <= self.retries:
            try:
                logger.debug('Sending %d bytes to %s', len(data), self.device)
                await loop.run_in_executor(None, self._write, data)
                return
            except (serial.SerialException, OSError) as e:
                logger.debug('send attempt %d failed: %s', attempt, e)
                last_exc = e
                attempt += 1
                await asyncio.sleep(self.backoff * attempt)
        raise WriteFailed(f'write to {self.device} failed: {last_exc}') from last_exc

    async def close(self) -> None:
        self._stop.set()
        ser, self._ser = self._ser, None
        if ser is not None and getattr(ser, 'is_open', False):
            logger.debug('Closing serial %s', self.device)
            try:
                ser.close()
            except (serial.SerialException, OSError) as e:
                logger.debug('Error closing serial: %s', e)
        reader, self._reader = self._reader, None
        if reader is not None and reader.is_alive() and reader is not threading.current_thread():
            await asyncio.get_running_loop().run_in_executor(None, reader.join, 1.0)

    async def __aenter__(self):
        await self.open(await self.discover())
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
