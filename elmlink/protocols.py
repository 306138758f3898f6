"""Protocol helpers: decode ELM327 replies into typed OBD-II values.

All functions here are pure and either return a value or raise `ParseError`.
The ``parse_*`` functions take adapter output: a `RawResponse`, the reply
text, or the bytes as received. Adapter output is always read as ASCII text;
line noise (control or non-ASCII bytes) is dropped. Already-decoded data
bytes go through `decode_pid` and `decode_dtc_bytes` instead.

ELM327 replies are line oriented. A reply may contain the echoed command (when
echo is still on), informational lines such as ``SEARCHING...``, one line per
responding ECU, or an ISO-TP multi-frame block::

    014
    0: 49 02 01 31 44 34
    1: 47 50 30 30 52 35 35
    2: 42 31 32 33 34 35 36

Multi-frame blocks are joined into one message and truncated to the declared
length before decoding.
"""
import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple, Union

from .errors import ParseError
from .models import DTCStatus, RawResponse

RawInput = Union[RawResponse, str, bytes, bytearray]

ADAPTER_ERRORS = (
    'NO DATA',
    'UNABLE TO CONNECT',
    'CAN ERROR',
    'BUS ERROR',
    'BUS BUSY',
    'BUFFER FULL',
    'DATA ERROR',
    'FB ERROR',
    'LV RESET',
    'STOPPED',
    'ERROR',
    '?',
)

_INFO_LINES = ('SEARCHING', 'BUS INIT')

_FRAME_RE = re.compile(r'^([0-9A-F]):\s*(.*)$')
_LENGTH_RE = re.compile(r'^[0-9A-F]{3}$')
_HEX_RE = re.compile(r'^[0-9A-F]+$')
_DTC_RE = re.compile(r'^([PCBU])([0-3])([0-9A-F]{3})$')
_VOLT_RE = re.compile(r'(\d+(?:\.\d+)?)\s*V', re.IGNORECASE)

DTC_MODE_HEADERS = {'03': 0x43, '07': 0x47, '0A': 0x4A}


_NOISE_RE = re.compile(r'[^\t\r\n\x20-\x7e]')


def _split(raw: RawInput) -> Tuple[str, str]:
    """Return (text, command) with line noise removed."""
    command = ''
    if isinstance(raw, RawResponse):
        command = raw.command
        raw = raw.data
    if isinstance(raw, (bytes, bytearray)):
        raw = bytes(raw).decode('latin-1')
    return _NOISE_RE.sub('', raw or ''), command


def response_lines(raw: RawInput) -> List[str]:
    """Meaningful reply lines: no prompt, no echo, no informational chatter."""
    text, command = _split(raw)
    echo = command.replace(' ', '').upper()
    out = []
    for line in re.split(r'[\r\n]+', text.replace('>', '\r')):
        line = line.strip().upper()
        if not line:
            continue
        if echo and line.replace(' ', '') == echo:
            continue
        if any(line.startswith(p) and 'ERROR' not in line for p in _INFO_LINES):
            continue
        out.append(line)
    return out


def adapter_error(raw: RawInput) -> Optional[str]:
    """Return the adapter error string if the reply is an error, else None."""
    for line in response_lines(raw):
        for err in ADAPTER_ERRORS:
            if err == '?':
                if line == '?':
                    return line
            elif err in line:
                return line
    return None


def _hex_messages(lines: List[str]) -> List[bytes]:
    messages: List[bytes] = []
    frames: List[str] = []
    declared: Optional[int] = None

    def _flush():
        nonlocal frames, declared
        if frames:
            data = bytes.fromhex(''.join(frames))
            messages.append(data[:declared] if declared is not None else data)
        frames = []
        declared = None

    for line in lines:
        compact = line.replace(' ', '')
        m = _FRAME_RE.match(line)
        if m:
            body = m.group(2).replace(' ', '')
            if _HEX_RE.match(body) and len(body) % 2 == 0:
                # a new block without its own length line
                if m.group(1) == '0' and frames:
                    _flush()
                frames.append(body)
            continue
        _flush()
        if _LENGTH_RE.match(compact):
            declared = int(compact, 16)
        elif _HEX_RE.match(compact) and len(compact) % 2 == 0:
            messages.append(bytes.fromhex(compact))
    _flush()
    return messages


def hex_messages(raw: RawInput) -> List[bytes]:
    """Decode every hex line (or joined multi-frame block) of a reply to bytes."""
    return _hex_messages(response_lines(raw))


# --- DTCs -----------------------------------------------------------------

def _bytes_to_dtc(b1: int, b2: int) -> str:
    # Convert two bytes into an OBD-II DTC string like P0123
    # Per SAE J2012: first two bits define the first letter
    first_char_map = {0: 'P', 1: 'C', 2: 'B', 3: 'U'}
    letter = first_char_map[(b1 & 0xC0) >> 6]
    code = ((b1 & 0x3F) << 8) | b2
    return f"{letter}{code:04X}"


def encode_dtc(code: str) -> bytes:
    """Inverse of the two-byte decode: 'P0133' -> b'\\x01\\x33'."""
    m = _DTC_RE.match((code or '').strip().upper())
    if not m:
        raise ValueError(f'invalid DTC code: {code!r}')
    letter, digit, rest = m.groups()
    value = ('PCBU'.index(letter) << 14) | (int(digit) << 12) | int(rest, 16)
    return bytes([(value >> 8) & 0xFF, value & 0xFF])


def parse_dtc_list(raw: RawInput, status: DTCStatus = DTCStatus.ACTIVE) -> List[Tuple[str, DTCStatus]]:
    """Parse a mode 03/07/0A reply into (code, status) pairs.

    Each message is the mode header (0x43/0x47/0x4A) followed by two-byte codes.
    CAN replies insert a count byte after the header, detected by the odd
    payload length. NO DATA and all-zero payloads decode to an empty list.
    """
    err = adapter_error(raw)
    if err == 'NO DATA':
        return []
    if err:
        raise ParseError(f'adapter error: {err}', command=getattr(raw, 'command', None))

    command = raw.command.replace(' ', '').upper() if isinstance(raw, RawResponse) else ''
    expected = DTC_MODE_HEADERS.get(command)
    headers = {expected} if expected else set(DTC_MODE_HEADERS.values())

    codes: List[str] = []
    for msg in hex_messages(raw):
        idx = next((i for i, b in enumerate(msg) if b in headers), None)
        if idx is None:
            continue
        payload = msg[idx + 1:]
        if len(payload) % 2 == 1:
            payload = payload[1:]
        _collect_codes(payload, codes)
    return [(c, status) for c in codes]


def _collect_codes(payload: bytes, codes: List[str]) -> None:
    for i in range(0, len(payload) - 1, 2):
        b1, b2 = payload[i], payload[i + 1]
        if b1 == 0 and b2 == 0:
            continue
        code = _bytes_to_dtc(b1, b2)
        if code not in codes:
            codes.append(code)


def decode_dtc_bytes(data: bytes, status: DTCStatus = DTCStatus.ACTIVE) -> List[Tuple[str, DTCStatus]]:
    """Decode a run of two-byte DTC values (no mode header, no count byte)."""
    if len(data) % 2:
        raise ParseError(f'DTC payload has odd length {len(data)}')
    codes: List[str] = []
    _collect_codes(bytes(data), codes)
    return [(c, status) for c in codes]


def parse_clear_ack(raw: RawInput) -> bool:
    if adapter_error(raw):
        return False
    if any(line == 'OK' for line in response_lines(raw)):
        return True
    return any(msg[:1] == b'\x44' for msg in hex_messages(raw))


# --- PIDs -----------------------------------------------------------------

@dataclass(frozen=True)
class PIDSpec:
    command: str
    name: str
    num_bytes: int
    unit: str
    formula: Callable[[bytes], float]

    @property
    def pid(self) -> int:
        return int(self.command[2:], 16)


PIDS: Dict[str, PIDSpec] = {
    '0104': PIDSpec('0104', 'engine_load', 1, '%', lambda d: d[0] * 100.0 / 255.0),
    '0105': PIDSpec('0105', 'coolant_temp', 1, 'C', lambda d: d[0] - 40.0),
    '010A': PIDSpec('010A', 'fuel_pressure', 1, 'kPa', lambda d: d[0] * 3.0),
    '010B': PIDSpec('010B', 'intake_pressure', 1, 'kPa', lambda d: float(d[0])),
    '010C': PIDSpec('010C', 'rpm', 2, 'rpm', lambda d: (256 * d[0] + d[1]) / 4.0),
    '010D': PIDSpec('010D', 'speed', 1, 'km/h', lambda d: float(d[0])),
    '010F': PIDSpec('010F', 'intake_temp', 1, 'C', lambda d: d[0] - 40.0),
    '0110': PIDSpec('0110', 'maf_flow', 2, 'g/s', lambda d: (256 * d[0] + d[1]) / 100.0),
    '0111': PIDSpec('0111', 'throttle', 1, '%', lambda d: d[0] * 100.0 / 255.0),
    '012F': PIDSpec('012F', 'fuel_level', 1, '%', lambda d: d[0] * 100.0 / 255.0),
}


def normalize_pid(pid_id: Union[str, int]) -> str:
    """'0C', '010C', '01 0C' and 0x0C all map to '010C'."""
    if isinstance(pid_id, int):
        return f'01{pid_id:02X}'
    s = pid_id.replace(' ', '').upper()
    if len(s) == 2:
        s = '01' + s
    return s


def get_pid(pid_id: Union[str, int]) -> PIDSpec:
    spec = PIDS.get(normalize_pid(pid_id))
    if spec is None:
        raise ParseError(f'unsupported PID {pid_id!r}')
    return spec


def decode_pid(pid_id: Union[str, int], data: bytes) -> float:
    """Apply the PID formula to the data bytes (A, B, ...) only."""
    spec = get_pid(pid_id)
    if len(data) < spec.num_bytes:
        raise ParseError(f'{spec.name}: expected {spec.num_bytes} data bytes, got {len(data)}')
    return round(spec.formula(bytes(data[:spec.num_bytes])), 2)


def parse_pid(pid_id: Union[str, int], raw: RawInput) -> float:
    """Decode a mode 01 reply (``41 0C 1A F8``) for `pid_id`."""
    spec = get_pid(pid_id)
    _, command = _split(raw)
    err = adapter_error(raw)
    if err:
        raise ParseError(f'{spec.name}: adapter error {err}', command=command or spec.command)
    for msg in hex_messages(raw):
        if len(msg) >= 2 and msg[0] == 0x41 and msg[1] == spec.pid:
            return decode_pid(spec.command, msg[2:])
    raise ParseError(f'{spec.name}: no 41 {spec.pid:02X} reply found', command=command or spec.command)


# --- vehicle / adapter info -----------------------------------------------

def parse_vin(raw: RawInput) -> str:
    """Decode a mode 09 PID 02 reply into the 17-character VIN.

    Handles the CAN form (one multi-frame message, ``49 02 01`` + 17 bytes)
    and the legacy form (one ``49 02 NN`` line per 4-byte chunk).
    """
    err = adapter_error(raw)
    if err:
        raise ParseError(f'VIN: adapter error {err}', command='0902')
    chunks = bytearray()
    for msg in hex_messages(raw):
        idx = msg.find(b'\x49\x02')
        if idx == -1:
            continue
        chunks.extend(msg[idx + 3:])
    vin = ''.join(chr(b) for b in chunks if chr(b).isalnum() and b < 128)
    if len(vin) < 17:
        raise ParseError(f'VIN: expected 17 characters, got {len(vin)}', command='0902')
    return vin[-17:]


def parse_version(raw: RawInput) -> str:
    lines = response_lines(raw)
    for line in lines:
        if 'ELM' in line:
            return line
    if not lines:
        raise ParseError('empty version reply', command='ATI')
    return lines[0]


def parse_voltage(raw: RawInput) -> float:
    for line in response_lines(raw):
        m = _VOLT_RE.search(line)
        if m:
            return float(m.group(1))
    raise ParseError('no voltage in reply', command='ATRV')


def parse_protocol(raw: RawInput) -> str:
    lines = response_lines(raw)
    if not lines or adapter_error(raw):
        raise ParseError('no protocol in reply', command='ATDP')
    return lines[0]
