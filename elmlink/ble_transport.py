import asyncio
from typing import Iterable, Optional

from bleak import BleakClient, BleakScanner
from bleak.exc import BleakError

from .config import CHARACTERISTIC_UUID, DEFAULT_NAME_PREFIXES, SERVICE_UUID
from .errors import ConnectFailed, NoAdapterFound, UnsupportedPlatform, WriteFailed
from .logger import get_logger
from .models import DeviceHandle
from .transport import Transport

logger = get_logger(__name__)


class BleTransport(Transport):
    """ELM327 clone over BLE GATT (the ffe0/ffe1 serial profile).

    Commands are written without response to the ffe1 characteristic and
    replies arrive as notifications on the same characteristic.
    """
    kind = 'ble'
    # default ATT payload before MTU exchange
    write_chunk = 20

    def __init__(self, scan_timeout: float = 6.0, address: Optional[str] = None,
                 service_uuid: str = SERVICE_UUID, char_uuid: str = CHARACTERISTIC_UUID):
        super().__init__()
        self.scan_timeout = float(scan_timeout)
        self.address = address
        self.service_uuid = service_uuid.lower()
        self.char_uuid = char_uuid.lower()
        self._client: Optional[BleakClient] = None
        self._char = None
        self._closing = False

    @property
    def is_open(self) -> bool:
        return self._client is not None and self._client.is_connected

    async def discover(self, name_prefixes: Optional[Iterable[str]] = None) -> DeviceHandle:
        try:
            if self.address:
                device = await BleakScanner.find_device_by_address(self.address, timeout=self.scan_timeout)
                if device is None:
                    raise NoAdapterFound(f'adapter {self.address} not found')
                return DeviceHandle(address=device.address, name=device.name, kind='ble', raw=device)

            logger.info('Scanning for BLE adapters (%.1fs)', self.scan_timeout)
            found = await BleakScanner.discover(timeout=self.scan_timeout, return_adv=True)
        except (BleakError, OSError) as e:
            raise UnsupportedPlatform(f'bluetooth unavailable: {e}') from e

        prefixes = tuple(p.upper() for p in (name_prefixes or DEFAULT_NAME_PREFIXES))
        candidates = []
        for device, adv in found.values():
            name = device.name or adv.local_name or ''
            advertised = [u.lower() for u in (adv.service_uuids or [])]
            if self.service_uuid in advertised or name.upper().startswith(prefixes):
                rssi = adv.rssi if adv.rssi is not None else -999
                candidates.append((rssi, device, name))
        if not candidates:
            raise NoAdapterFound(f'no BLE adapter matching {", ".join(prefixes)} or service {self.service_uuid}')

        candidates.sort(key=lambda c: c[0], reverse=True)
        rssi, device, name = candidates[0]
        logger.info('Selected %s (%s) rssi=%s', name, device.address, rssi)
        return DeviceHandle(address=device.address, name=name or None, kind='ble', raw=device)

    async def open(self, handle: DeviceHandle) -> None:
        if self.is_open:
            return
        self._closing = False
        client = BleakClient(handle.raw or handle.address, disconnected_callback=self._handle_disconnect)
        try:
            await client.connect()
            service = client.services.get_service(self.service_uuid)
            char = service.get_characteristic(self.char_uuid) if service else None
            if char is None:
                raise ConnectFailed(f'{handle.label} has no {self.service_uuid}/{self.char_uuid} characteristic')
            await client.start_notify(char, self._notify)
        except ConnectFailed:
            await self._safe_disconnect(client)
            raise
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            await self._safe_disconnect(client)
            raise ConnectFailed(f'cannot connect to {handle.label}: {e}') from e
        self._client = client
        self._char = char
        logger.info('Connected to %s', handle.label)

    def _notify(self, _sender, data: bytearray):
        self._deliver(bytes(data))

    def _handle_disconnect(self, _client):
        if self._closing:
            return
        self._client = None
        self._char = None
        self._link_lost()

    async def send(self, data: bytes) -> None:
        if not self.is_open:
            raise WriteFailed('BLE link not open')
        try:
            for i in range(0, len(data), self.write_chunk):
                await self._client.write_gatt_char(self._char, data[i:i + self.write_chunk], response=False)
        except (BleakError, OSError) as e:
            raise WriteFailed(f'BLE write failed: {e}') from e

    async def _safe_disconnect(self, client: BleakClient):
        try:
            await client.disconnect()
        except (BleakError, OSError) as e:
            logger.debug('Error disconnecting: %s', e)

    async def close(self) -> None:
        self._closing = True
        client, self._client = self._client, None
        char, self._char = self._char, None
        if client is None:
            return
        if client.is_connected and char is not None:
            try:
                await client.stop_notify(char)
            except (BleakError, OSError) as e:
                logger.debug('Error stopping notifications: %s', e)
        await self._safe_disconnect(client)
