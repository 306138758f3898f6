"""Data types shared by the transport, engine, session and poller."""
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional


class SessionState(Enum):
    DISCONNECTED = 'disconnected'
    CONNECTING = 'connecting'
    INITIALIZING = 'initializing'
    READY = 'ready'
    ERROR = 'error'


class DataSource(Enum):
    REAL = 'real'
    SIMULATED = 'simulated'


class DTCStatus(Enum):
    ACTIVE = 'active'
    PENDING = 'pending'


class Severity(Enum):
    LOW = 'low'
    MEDIUM = 'medium'
    HIGH = 'high'


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AdapterSession:
    state: SessionState = SessionState.DISCONNECTED
    device_name: Optional[str] = None
    last_error: Optional[str] = None


@dataclass
class DeviceHandle:
    """A discovered adapter. `raw` holds the backend object (BLEDevice, port info)."""
    address: str
    name: Optional[str] = None
    kind: str = 'ble'
    raw: Any = None

    @property
    def label(self) -> str:
        return self.name or self.address


@dataclass
class Command:
    text: str
    timeout_ms: int
    issued_at: float = field(default_factory=time.monotonic)

    def elapsed_ms(self) -> float:
        return (time.monotonic() - self.issued_at) * 1000.0


@dataclass
class RawResponse:
    data: bytes
    command: str = ''
    received_at: datetime = field(default_factory=_now)
    elapsed_ms: float = 0.0

    @property
    def text(self) -> str:
        return self.data.decode('ascii', errors='replace')


@dataclass
class DTCRecord:
    code: str
    status: DTCStatus
    description: str
    severity: Severity
    category: str = ''
    causes: List[str] = field(default_factory=list)

    def to_dict(self):
        return {
            'code': self.code,
            'status': self.status.value,
            'description': self.description,
            'severity': self.severity.value,
            'category': self.category,
            'causes': list(self.causes),
        }


@dataclass
class DTCReport:
    dtcs: List[DTCRecord]
    source: DataSource
    read_at: datetime = field(default_factory=_now)

    def __iter__(self):
        return iter(self.dtcs)

    def __len__(self):
        return len(self.dtcs)

    def __getitem__(self, idx):
        return self.dtcs[idx]

    @property
    def codes(self) -> List[str]:
        return [d.code for d in self.dtcs]

    def to_dict(self):
        return {
            'source': self.source.value,
            'read_at': self.read_at.isoformat(),
            'dtcs': [d.to_dict() for d in self.dtcs],
        }


@dataclass
class LiveTelemetrySample:
    rpm: Optional[float] = None
    speed_kmh: Optional[float] = None
    coolant_temp_c: Optional[float] = None
    fuel_level_pct: Optional[float] = None
    throttle_pct: Optional[float] = None
    intake_temp_c: Optional[float] = None
    timestamp: datetime = field(default_factory=_now)
    source: DataSource = DataSource.REAL

    def to_dict(self):
        return {
            'rpm': self.rpm,
            'speed_kmh': self.speed_kmh,
            'coolant_temp_c': self.coolant_temp_c,
            'fuel_level_pct': self.fuel_level_pct,
            'throttle_pct': self.throttle_pct,
            'intake_temp_c': self.intake_temp_c,
            'timestamp': self.timestamp.isoformat(),
            'source': self.source.value,
        }


@dataclass
class AdapterInfo:
    version: Optional[str]
    voltage: Optional[float]
    protocol: Optional[str]
    source: DataSource = DataSource.REAL

    def to_dict(self):
        return {
            'version': self.version,
            'voltage': self.voltage,
            'protocol': self.protocol,
            'source': self.source.value,
        }


@dataclass
class MonitoringSession:
    interval_ms: int
    active: bool = True
    ticks: int = 0


@dataclass
class ConnectionEvent:
    connected: bool
    state: SessionState
    device_name: Optional[str] = None
    error: Optional[str] = None


@dataclass
class DataEvent:
    # 'liveData' for poller samples, 'response' for raw adapter replies
    type: str
    data: Any
    source: Optional[DataSource] = None
