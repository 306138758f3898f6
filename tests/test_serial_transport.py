import asyncio
import threading
from types import SimpleNamespace

import pytest
import serial

from elmlink import serial_comm
from elmlink.engine import CommandEngine
from elmlink.errors import ConnectFailed, NoAdapterFound, WriteFailed
from elmlink.serial_comm import SerialTransport

REPLIES = {
    b'ATI': b'ELM327 v1.5\r\r>',
    b'010D': b'41 0D 2A\r\r>',
}


class FakeSerial:
    fail_writes = False

    def __init__(self, port, baud, timeout=None):
        self.port = port
        self.baudrate = baud
        self.timeout = timeout or 0.05
        self.is_open = True
        self.written = []
        self._buf = bytearray()
        self._cv = threading.Condition()

    @property
    def in_waiting(self):
        with self._cv:
            return len(self._buf)

    def read(self, n=1):
        with self._cv:
            if not self._buf and self.is_open:
                self._cv.wait(self.timeout)
            if not self.is_open:
                raise serial.SerialException('device disconnected')
            data = bytes(self._buf[:n])
            del self._buf[:n]
            return data

    def write(self, data):
        if self.fail_writes:
            raise serial.SerialException('write failed')
        self.written.append(bytes(data))
        reply = REPLIES.get(bytes(data).strip())
        if reply:
            with self._cv:
                self._buf.extend(reply)
                self._cv.notify_all()
        return len(data)

    def flush(self):
        pass

    def close(self):
        with self._cv:
            self.is_open = False
            self._cv.notify_all()


@pytest.fixture
def fake_serial(monkeypatch):
    opened = []

    def factory(port, baud, timeout=None):
        s = FakeSerial(port, baud, timeout)
        opened.append(s)
        return s

    monkeypatch.setattr(serial_comm.serial, 'Serial', factory)
    return opened


@pytest.mark.asyncio
async def test_command_roundtrip_over_serial(fake_serial, fast_config):
    t = SerialTransport(device='COM7', baud=38400)
    await t.open(await t.discover())
    try:
        engine = CommandEngine(t, fast_config)
        resp = await engine.execute('ATI')
        assert 'ELM327' in resp.text
        resp = await engine.execute('010D')
        assert resp.text.strip() == '41 0D 2A'
        assert fake_serial[0].written == [b'ATI\r', b'010D\r']
        assert fake_serial[0].baudrate == 38400
    finally:
        await t.close()
    assert not t.is_open
    # idempotent
    await t.close()


@pytest.mark.asyncio
async def test_unplug_reports_link_lost(fake_serial):
    t = SerialTransport(device='COM7')
    lost = asyncio.Event()
    t.set_disconnect_handler(lost.set)
    await t.open(await t.discover())
    fake_serial[0].close()
    await asyncio.wait_for(lost.wait(), 1.0)
    await t.close()


@pytest.mark.asyncio
async def test_open_failure_raises_connect_failed(monkeypatch):
    def boom(port, baud, timeout=None):
        raise serial.SerialException('permission denied')

    monkeypatch.setattr(serial_comm.serial, 'Serial', boom)
    t = SerialTransport(device='COM7')
    with pytest.raises(ConnectFailed):
        await t.open(await t.discover())


@pytest.mark.asyncio
async def test_write_retries_then_fails(fake_serial, monkeypatch):
    monkeypatch.setattr(FakeSerial, 'fail_writes', True)
    t = SerialTransport(device='COM7', retries=1, backoff=0.01)
    await t.open(await t.discover())
    try:
        with pytest.raises(WriteFailed):
            await t.send(b'ATI\r')
    finally:
        await t.close()
    with pytest.raises(WriteFailed):
        await t.send(b'ATI\r')


@pytest.mark.asyncio
async def test_discover_matches_port_description(monkeypatch):
    monkeypatch.delenv('ELMLINK_DEVICE', raising=False)
    ports = [
        SimpleNamespace(device='/dev/ttyS0', description='n/a', product=None, manufacturer=None),
        SimpleNamespace(device='/dev/ttyUSB3', description='OBDII Adapter', product=None, manufacturer='FTDI'),
    ]
    monkeypatch.setattr(serial_comm.list_ports, 'comports', lambda: ports)
    handle = await SerialTransport().discover()
    assert handle.address == '/dev/ttyUSB3'
    assert handle.kind == 'serial'


@pytest.mark.asyncio
async def test_discover_env_and_missing(monkeypatch):
    monkeypatch.setenv('ELMLINK_DEVICE', 'COM3')
    handle = await SerialTransport().discover()
    assert handle.address == 'COM3'

    monkeypatch.delenv('ELMLINK_DEVICE')
    monkeypatch.setattr(serial_comm.list_ports, 'comports', lambda: [])
    with pytest.raises(NoAdapterFound):
        await SerialTransport().discover()
