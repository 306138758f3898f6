"""Link configuration.

Defaults match common ELM327 clones; every field can be overridden by the
caller, and the most common ones through ELMLINK_* environment variables.
"""
import os
from dataclasses import dataclass, field, replace
from typing import Optional, Tuple

SERVICE_UUID = '0000ffe0-0000-1000-8000-00805f9b34fb'
CHARACTERISTIC_UUID = '0000ffe1-0000-1000-8000-00805f9b34fb'

DEFAULT_NAME_PREFIXES = ('ELM327', 'OBDII', 'OBD', 'VLINK')

TRANSPORTS = ('ble', 'serial', 'emulator')


@dataclass
class LinkConfig:
    transport: str = 'ble'
    # BLE address, serial port path, or None to discover
    device: Optional[str] = None
    name_prefixes: Tuple[str, ...] = field(default=DEFAULT_NAME_PREFIXES)
    scan_timeout: float = 6.0
    baud: int = 38400

    command_timeout_ms: int = 2000
    reset_timeout_ms: int = 3000
    vin_timeout_ms: int = 5000
    init_pause_ms: int = 100
    # full handshake attempts (1 retry)
    init_attempts: int = 2
    # consecutive timeouts on one init command before giving up
    command_retries: int = 3
    # quiet time after a bare CR/LF before a reply is considered complete
    settle_ms: int = 60

    monitor_interval_ms: int = 2000

    def with_overrides(self, **kwargs) -> 'LinkConfig':
        return replace(self, **{k: v for k, v in kwargs.items() if v is not None})

    @classmethod
    def from_env(cls, **kwargs) -> 'LinkConfig':
        cfg = cls()
        env = {}
        transport = os.environ.get('ELMLINK_TRANSPORT')
        if transport:
            if transport not in TRANSPORTS:
                raise ValueError(f'ELMLINK_TRANSPORT must be one of {TRANSPORTS}, got {transport!r}')
            env['transport'] = transport
        if os.environ.get('ELMLINK_DEVICE'):
            env['device'] = os.environ['ELMLINK_DEVICE']
        if os.environ.get('ELMLINK_BAUD'):
            env['baud'] = int(os.environ['ELMLINK_BAUD'])
        if os.environ.get('ELMLINK_TIMEOUT_MS'):
            env['command_timeout_ms'] = int(os.environ['ELMLINK_TIMEOUT_MS'])
        env.update({k: v for k, v in kwargs.items() if v is not None})
        return cfg.with_overrides(**env)
