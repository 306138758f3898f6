"""Diagnostic session: the public face of the library.

A `DiagnosticSession` owns one transport, one command engine and one
telemetry poller, and moves through

    Disconnected -> Connecting -> Initializing -> Ready

with Error reachable from any of the non-terminal states. Reads made while the
session is not Ready are answered by the simulation fallback and tagged
``source=simulated``; `clear_dtcs` is the one operation that refuses.
"""
from typing import Any, Callable, Dict, Optional, Tuple

from . import dtc_db, events
from .audit import audit_write
from .config import LinkConfig
from .engine import CommandEngine
from .errors import CommandTimeout, ElmLinkError, InitializationFailed, NotConnected, ParseError
from .logger import get_logger
from .models import (AdapterInfo, AdapterSession, ConnectionEvent, DataEvent, DataSource, DTCReport,
                     DTCStatus, LiveTelemetrySample, MonitoringSession, RawResponse, SessionState)
from .poller import TelemetryPoller
from .protocols import (normalize_pid, parse_clear_ack, parse_dtc_list, parse_pid, parse_protocol,
                        parse_version, parse_vin, parse_voltage)
from .simulator import SimulationFallback
from .transport import Transport, create_transport

logger = get_logger(__name__)

# sample field -> mode 01 command
LIVE_PIDS = (
    ('rpm', '010C'),
    ('speed_kmh', '010D'),
    ('coolant_temp_c', '0105'),
    ('fuel_level_pct', '012F'),
    ('throttle_pct', '0111'),
    ('intake_temp_c', '010F'),
)

DTC_READS = (('03', DTCStatus.ACTIVE), ('07', DTCStatus.PENDING))

_TERMINAL = (SessionState.READY, SessionState.ERROR, SessionState.DISCONNECTED)


class DiagnosticSession:
    def __init__(self, transport: Optional[Transport] = None, config: Optional[LinkConfig] = None,
                 bus: Optional[events.EventBus] = None, simulator: Optional[SimulationFallback] = None):
        self.config = config or LinkConfig()
        self.bus = bus or events.EventBus()
        self.simulator = simulator or SimulationFallback()
        self._transport = transport
        self._engine: Optional[CommandEngine] = None
        self._adapter = AdapterSession()
        # bumped by disconnect() so an interrupted connect() or read can tell it was cut off
        self._generation = 0
        self.poller = TelemetryPoller(self.read_live_data, self.bus)

    # -- state ------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._adapter.state

    @property
    def is_ready(self) -> bool:
        return self._adapter.state is SessionState.READY

    @property
    def transport(self) -> Optional[Transport]:
        return self._transport

    @property
    def engine(self) -> Optional[CommandEngine]:
        return self._engine

    def _set_state(self, state: SessionState, error: Optional[str] = None) -> None:
        prev = self._adapter.state
        self._adapter.state = state
        if error is not None or state is SessionState.READY:
            self._adapter.last_error = error
        logger.info('Session %s -> %s%s', prev.value, state.value, f' ({error})' if error else '')
        if state in _TERMINAL:
            self.bus.publish(events.CONNECTION, ConnectionEvent(
                connected=state is SessionState.READY,
                state=state,
                device_name=self._adapter.device_name,
                error=error,
            ))

    def get_connection_status(self) -> Dict[str, Any]:
        return {
            'connected': self.is_ready,
            'state': self._adapter.state.value,
            'device': self._adapter.device_name,
            'transport': self._transport.kind if self._transport else self.config.transport,
            'last_error': self._adapter.last_error,
            'monitoring': self.poller.active,
        }

    def on_connection_change(self, callback: Callable[[ConnectionEvent], None]) -> events.Subscription:
        return self.bus.subscribe(events.CONNECTION, callback)

    def on_data_received(self, callback: Callable[[DataEvent], None]) -> events.Subscription:
        return self.bus.subscribe(events.DATA, callback)

    # -- connection -------------------------------------------------------

    def _ensure_engine(self) -> CommandEngine:
        if self._transport is None:
            self._transport = create_transport(self.config)
        if self._engine is None or self._engine.transport is not self._transport:
            self._engine = CommandEngine(self._transport, self.config, on_response=self._publish_response)
        self._transport.set_disconnect_handler(self._on_link_lost)
        return self._engine

    async def connect(self) -> Dict[str, Any]:
        """Discover, open and initialize the adapter.

        Any failure leaves the session in Error and re-raises the cause. A
        failed handshake is retried once with the full sequence before
        giving up; a platform without Bluetooth is never retried.
        """
        if self.is_ready:
            return self.get_connection_status()
        if self._adapter.state in (SessionState.CONNECTING, SessionState.INITIALIZING):
            raise ElmLinkError(f'connect already in progress ({self._adapter.state.value})')

        generation = self._generation
        engine = self._ensure_engine()
        transport = self._transport
        self._adapter.last_error = None
        self._set_state(SessionState.CONNECTING)
        try:
            handle = await transport.discover(self.config.name_prefixes)
            self._adapter.device_name = handle.label
            await transport.open(handle)
            if generation != self._generation:
                raise NotConnected('disconnected during connect')
            engine.open()
            self._set_state(SessionState.INITIALIZING)
            await self._initialize(engine)
            if generation != self._generation:
                raise NotConnected('disconnected during connect')
        except ElmLinkError as e:
            engine.shutdown('connect failed')
            await self._close_transport()
            if generation == self._generation:
                self._set_state(SessionState.ERROR, str(e))
            raise

        self._set_state(SessionState.READY)
        return self.get_connection_status()

    async def _initialize(self, engine: CommandEngine) -> None:
        attempts = max(1, self.config.init_attempts)
        for attempt in range(1, attempts + 1):
            try:
                await engine.initialize()
                return
            except InitializationFailed as e:
                if attempt >= attempts:
                    raise
                logger.warning('Initialization failed (%s); retrying handshake (%d/%d)', e, attempt + 1, attempts)

    async def _close_transport(self) -> None:
        if self._transport is None:
            return
        try:
            await self._transport.close()
        except (ElmLinkError, OSError) as e:
            logger.warning('Error closing %s transport: %s', self._transport.kind, e)

    async def disconnect(self) -> None:
        """Stop monitoring, abort the in-flight command and close the link."""
        await self.poller.stop()
        if self._adapter.state is SessionState.DISCONNECTED:
            return
        self._generation += 1
        if self._engine is not None:
            self._engine.shutdown('disconnect requested')
        await self._close_transport()
        self._set_state(SessionState.DISCONNECTED)

    def _on_link_lost(self) -> None:
        if self._engine is not None:
            self._engine.shutdown('link lost')
        if self._adapter.state is SessionState.READY:
            self.poller.stop_monitoring()
            self._set_state(SessionState.ERROR, 'adapter link lost')

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.disconnect()

    # -- commands ---------------------------------------------------------

    def _publish_response(self, resp: RawResponse) -> None:
        self.bus.publish(events.DATA, DataEvent(type='response', data=resp, source=DataSource.REAL))

    def _require_ready(self, action: str) -> CommandEngine:
        if not self.is_ready or self._engine is None:
            raise NotConnected(f'{action} requires a ready adapter (state={self._adapter.state.value})')
        return self._engine

    def _went_away(self, action: str, e: ElmLinkError, generation: int) -> bool:
        """True if `e` was caused by a disconnect or link loss during the read."""
        if self.is_ready and generation == self._generation:
            return False
        logger.warning('%s: adapter went away (%s), using simulated data', action, e)
        return True

    async def read_dtcs(self) -> DTCReport:
        if not self.is_ready:
            logger.warning('read_dtcs: adapter not ready, returning simulated codes')
            return self.simulator.dtc_report()
        generation = self._generation
        records = []
        seen = set()
        for command, status in DTC_READS:
            try:
                resp = await self._engine.execute(command)
            except (NotConnected, CommandTimeout) as e:
                if self._went_away('read_dtcs', e, generation):
                    return self.simulator.dtc_report()
                raise
            try:
                found = parse_dtc_list(resp, status)
            except ParseError as e:
                logger.warning('Unparseable %s reply %r: %s', command, resp.text, e)
                found = []
            for code, st in found:
                if code in seen:
                    continue
                seen.add(code)
                records.append(dtc_db.to_record(code, st))
        return DTCReport(dtcs=records, source=DataSource.REAL)

    async def clear_dtcs(self) -> bool:
        """Send mode 04. The vehicle's stored codes and freeze frames are erased."""
        engine = self._require_ready('clear_dtcs')
        resp = await engine.execute('04')
        ok = parse_clear_ack(resp)
        audit_write('clear_dtcs', {'device': self._adapter.device_name, 'success': ok, 'reply': resp.text.strip()})
        if not ok:
            logger.warning('Clear DTCs not acknowledged: %r', resp.text)
        return ok

    async def read_pid(self, pid_id) -> float:
        engine = self._require_ready('read_pid')
        command = normalize_pid(pid_id)
        resp = await engine.execute(command)
        return parse_pid(command, resp)

    async def read_live_data(self) -> LiveTelemetrySample:
        if not self.is_ready:
            return self.simulator.live_sample()
        generation = self._generation
        values: Dict[str, Optional[float]] = {}
        for field_name, command in LIVE_PIDS:
            try:
                values[field_name] = await self.read_pid(command)
            except (NotConnected, CommandTimeout) as e:
                if self._went_away('read_live_data', e, generation):
                    return self.simulator.live_sample()
                if isinstance(e, NotConnected):
                    raise
                logger.debug('%s unavailable: %s', command, e)
                values[field_name] = None
            except ParseError as e:
                logger.debug('%s unavailable: %s', command, e)
                values[field_name] = None
        return LiveTelemetrySample(source=DataSource.REAL, **values)

    async def read_vin(self) -> Optional[str]:
        vin, _ = await self.read_vin_with_source()
        return vin

    async def read_vin_with_source(self) -> Tuple[Optional[str], DataSource]:
        """Like `read_vin`, also reporting whether the value came from the vehicle."""
        if not self.is_ready:
            return self.simulator.vin(), DataSource.SIMULATED
        generation = self._generation
        try:
            resp = await self._engine.execute('0902', self.config.vin_timeout_ms)
        except (NotConnected, CommandTimeout) as e:
            if self._went_away('read_vin', e, generation):
                return self.simulator.vin(), DataSource.SIMULATED
            raise
        try:
            return parse_vin(resp), DataSource.REAL
        except ParseError as e:
            logger.warning('VIN unavailable: %s', e)
            return None, DataSource.REAL

    async def get_adapter_info(self) -> AdapterInfo:
        if not self.is_ready:
            return self.simulator.adapter_info()
        generation = self._generation
        info = AdapterInfo(version=None, voltage=None, protocol=None)
        for command, attr, parser in (('ATI', 'version', parse_version),
                                      ('ATRV', 'voltage', parse_voltage),
                                      ('ATDP', 'protocol', parse_protocol)):
            try:
                setattr(info, attr, parser(await self._engine.execute(command)))
            except (NotConnected, CommandTimeout) as e:
                if self._went_away('get_adapter_info', e, generation):
                    return self.simulator.adapter_info()
                if isinstance(e, NotConnected):
                    raise
                logger.debug('%s unavailable: %s', command, e)
            except ParseError as e:
                logger.debug('%s unavailable: %s', command, e)
        return info

    async def test_connection(self) -> bool:
        """Round-trip ATI; False if the adapter does not answer sensibly."""
        if not self.is_ready:
            return False
        try:
            return bool(parse_version(await self._engine.execute('ATI')))
        except (ParseError, CommandTimeout, NotConnected) as e:
            logger.info('Connection test failed: %s', e)
            return False

    # -- monitoring -------------------------------------------------------

    def start_monitoring(self, interval_ms: Optional[int] = None) -> MonitoringSession:
        return self.poller.start(self.config.monitor_interval_ms if interval_ms is None else interval_ms)

    def stop_monitoring(self) -> bool:
        return self.poller.stop_monitoring()

    @property
    def monitoring(self) -> Optional[MonitoringSession]:
        return self.poller.current
