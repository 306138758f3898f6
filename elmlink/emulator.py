"""In-process ELM327 emulator exposed as a Transport.

Answers the AT/OBD command set the session uses with replies formatted the
way a CAN ELM327 prints them (honouring echo, spaces and linefeed settings),
and delivers each reply in small notification-sized chunks after a short
latency so the engine's reassembly path is exercised exactly as with a real
BLE adapter.
"""
import asyncio
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Set, Union

from .errors import WriteFailed
from .logger import get_logger
from .models import DeviceHandle
from .protocols import encode_dtc
from .transport import Transport

logger = get_logger(__name__)

Reply = Union[str, Callable[[str], Optional[str]]]


@dataclass
class VehicleState:
    rpm: float = 850.0
    speed_kmh: int = 0
    coolant_temp_c: int = 88
    engine_load_pct: float = 22.0
    throttle_pct: float = 14.9
    intake_temp_c: int = 30
    maf_gs: float = 3.5
    fuel_level_pct: float = 74.9
    fuel_pressure_kpa: int = 300
    intake_pressure_kpa: int = 35
    voltage: float = 12.6
    vin: str = '1HGCM82633A004352'
    stored_dtcs: List[str] = field(default_factory=list)
    pending_dtcs: List[str] = field(default_factory=list)
    unsupported_pids: Set[str] = field(default_factory=set)


class Elm327Emulator:
    version = 'ELM327 v1.5'

    def __init__(self, vehicle: Optional[VehicleState] = None, no_dtc_reply: str = 'NO DATA'):
        self.vehicle = vehicle or VehicleState()
        self.no_dtc_reply = no_dtc_reply
        self._reset_flags()

    def _reset_flags(self):
        self.echo = True
        self.linefeed = True
        self.spaces = True
        self.headers = False
        self.protocol = '0'

    def _hex(self, data: Iterable[int]) -> str:
        sep = ' ' if self.spaces else ''
        return sep.join(f'{b:02X}' for b in data)

    def process(self, cmd: str) -> str:
        """Return the reply body (without echo or prompt) for one command."""
        cmd = cmd.strip().upper().replace(' ', '')
        if not cmd:
            return ''
        if cmd.startswith('AT'):
            return self._at(cmd[2:])
        if all(c in '0123456789ABCDEF' for c in cmd) and len(cmd) % 2 == 0:
            return self._obd(cmd)
        return '?'

    def _at(self, cmd: str) -> str:
        if cmd in ('Z', 'WS'):
            self._reset_flags()
            return self.version
        if cmd == 'I':
            return self.version
        if cmd == 'RV':
            return f'{self.vehicle.voltage:.1f}V'
        if cmd == 'DP':
            return 'AUTO, ISO 15765-4 (CAN 11/500)'
        if cmd == 'DPN':
            return 'A6'
        toggles = {'E': 'echo', 'L': 'linefeed', 'S': 'spaces', 'H': 'headers'}
        if len(cmd) == 2 and cmd[0] in toggles and cmd[1] in '01':
            setattr(self, toggles[cmd[0]], cmd[1] == '1')
            return 'OK'
        if cmd.startswith('SP'):
            self.protocol = cmd[2:] or '0'
            return 'OK'
        if cmd.startswith(('ST', 'AT', 'M')):
            return 'OK'
        return '?'

    def _obd(self, cmd: str) -> str:
        mode = cmd[:2]
        if mode == '01' and len(cmd) == 4:
            return self._mode01(cmd)
        if mode in ('03', '07'):
            codes = self.vehicle.stored_dtcs if mode == '03' else self.vehicle.pending_dtcs
            if not codes:
                return self.no_dtc_reply
            payload = [0x40 + int(mode, 16), len(codes)]
            for code in codes:
                payload.extend(encode_dtc(code))
            return self._hex(payload)
        if mode == '04':
            self.vehicle.stored_dtcs = []
            self.vehicle.pending_dtcs = []
            return '44'
        if cmd == '0902':
            return self._vin()
        return 'NO DATA'

    def _mode01(self, cmd: str) -> str:
        if cmd in self.vehicle.unsupported_pids:
            return 'NO DATA'
        v = self.vehicle
        values = {
            '0104': [round(v.engine_load_pct * 255 / 100)],
            '0105': [v.coolant_temp_c + 40],
            '010A': [v.fuel_pressure_kpa // 3],
            '010B': [v.intake_pressure_kpa],
            '010C': list(divmod(int(v.rpm * 4), 256)),
            '010D': [v.speed_kmh],
            '010F': [v.intake_temp_c + 40],
            '0110': list(divmod(int(v.maf_gs * 100), 256)),
            '0111': [round(v.throttle_pct * 255 / 100)],
            '012F': [round(v.fuel_level_pct * 255 / 100)],
        }
        data = values.get(cmd)
        if data is None:
            return 'NO DATA'
        return self._hex([0x41, int(cmd[2:], 16)] + [b & 0xFF for b in data])

    def _vin(self) -> str:
        payload = [0x49, 0x02, 0x01] + list(self.vehicle.vin.encode('ascii'))
        lines = [f'{len(payload):03X}']
        # ISO-TP framing: first frame carries 6 bytes, consecutive frames 7
        chunks = [payload[:6]] + [payload[i:i + 7] for i in range(6, len(payload), 7)]
        sep = ' ' if self.spaces else ''
        for i, chunk in enumerate(chunks):
            lines.append(f'{i % 16:X}:{sep}{self._hex(chunk)}')
        return '\r'.join(lines)

    def frame(self, cmd: str, body: str, prompt: bool = True) -> str:
        """Wrap a reply body the way the adapter prints it."""
        eol = '\r\n' if self.linefeed else '\r'
        out = ''
        if self.echo:
            out += cmd + eol
        if body:
            out += body.replace('\r', eol) + eol
        if prompt:
            out += eol + '>'
        return out


class EmulatorTransport(Transport):
    """Transport backed by `Elm327Emulator`.

    `script` maps a command to a fixed reply body (or a callable returning
    one, or None for no reply); `silent` commands are swallowed so the engine
    times out; `prompt=False` emulates firmware that ends replies with a bare
    CR instead of the ``>`` prompt.
    """
    kind = 'emulator'

    def __init__(self, emulator: Optional[Elm327Emulator] = None, latency: float = 0.002,
                 chunk_size: int = 20, prompt: bool = True, script: Optional[Dict[str, Reply]] = None,
                 silent: Optional[Iterable[str]] = None, name: str = 'ELM327 Emulator'):
        super().__init__()
        self.emulator = emulator or Elm327Emulator()
        self.latency = latency
        self.chunk_size = max(1, chunk_size)
        self.prompt = prompt
        self.script: Dict[str, Reply] = dict(script or {})
        self.silent: Set[str] = {s.upper() for s in (silent or ())}
        self.name = name
        self.sent: List[str] = []
        self._open = False
        self._line = ''
        self._handles: List[asyncio.TimerHandle] = []

    @property
    def vehicle(self) -> VehicleState:
        return self.emulator.vehicle

    @property
    def is_open(self) -> bool:
        return self._open

    async def discover(self, name_prefixes=None) -> DeviceHandle:
        return DeviceHandle(address='emulator', name=self.name, kind='emulator')

    async def open(self, handle: DeviceHandle) -> None:
        self._open = True
        self._line = ''

    async def send(self, data: bytes) -> None:
        if not self._open:
            raise WriteFailed('emulator link closed')
        self._line += data.decode('ascii', errors='replace')
        while '\r' in self._line:
            cmd, self._line = self._line.split('\r', 1)
            self._handle_command(cmd.strip())

    def _handle_command(self, cmd: str):
        key = cmd.upper()
        self.sent.append(key)
        if key in self.silent:
            logger.debug('emulator: ignoring %s', key)
            return
        if key in self.script:
            reply = self.script[key]
            body = reply(key) if callable(reply) else reply
            if body is None:
                return
        else:
            body = self.emulator.process(key)
        self._schedule(self.emulator.frame(cmd, body, prompt=self.prompt))

    def _schedule(self, text: str):
        loop = asyncio.get_running_loop()
        data = text.encode('ascii')
        chunks = [data[i:i + self.chunk_size] for i in range(0, len(data), self.chunk_size)]
        now = loop.time()
        self._handles = [h for h in self._handles if h.when() > now]
        for i, chunk in enumerate(chunks, start=1):
            self._handles.append(loop.call_later(self.latency * i, self._deliver, chunk))

    def drop_link(self):
        """Simulate the adapter going out of range."""
        self._cancel()
        self._open = False
        self._link_lost()

    def _cancel(self):
        for h in self._handles:
            h.cancel()
        self._handles = []

    async def close(self) -> None:
        self._cancel()
        self._open = False
