from fastapi import APIRouter, HTTPException
from pydantic import BaseModel
from typing import Any, Dict, Optional

from elmlink import dtc_db, events
from elmlink.config import TRANSPORTS, LinkConfig
from elmlink.errors import (ConnectFailed, ElmLinkError, InitializationFailed, NoAdapterFound, NotConnected,
                            UnsupportedPlatform)
from elmlink.logger import get_logger
from elmlink.models import DataEvent
from elmlink.session import DiagnosticSession

logger = get_logger(__name__)

router = APIRouter()


class ConnectRequest(BaseModel):
    transport: Optional[str] = None
    device: Optional[str] = None
    timeout_ms: Optional[int] = None


class MonitorRequest(BaseModel):
    interval_ms: int = 2000


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, NotConnected):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, (NoAdapterFound, UnsupportedPlatform, ConnectFailed, InitializationFailed, ValueError)):
        return HTTPException(status_code=400, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


class _SessionManager:
    """Holds the single DiagnosticSession the API drives."""

    def __init__(self):
        self._session: Optional[DiagnosticSession] = None
        self._latest: Optional[DataEvent] = None

    @property
    def session(self) -> DiagnosticSession:
        if self._session is None:
            self._session = self._build(LinkConfig.from_env())
        return self._session

    def _build(self, config: LinkConfig) -> DiagnosticSession:
        session = DiagnosticSession(config=config)
        session.on_data_received(self._remember)
        return session

    def _remember(self, event: DataEvent):
        if event.type == 'liveData':
            self._latest = event

    async def connect(self, req: ConnectRequest) -> Dict[str, Any]:
        if req.transport is not None and req.transport not in TRANSPORTS:
            raise ValueError(f'transport must be one of {TRANSPORTS}')
        current = self.session
        if current.is_ready:
            raise ValueError('already connected')
        overrides = {'transport': req.transport, 'device': req.device, 'command_timeout_ms': req.timeout_ms}
        if any(v is not None for v in overrides.values()):
            await current.disconnect()
            self._session = self._build(current.config.with_overrides(**overrides))
        return await self.session.connect()

    async def disconnect(self) -> Dict[str, Any]:
        if self._session is not None:
            await self._session.disconnect()
        return self.status()

    def status(self) -> Dict[str, Any]:
        return self.session.get_connection_status()

    def latest(self) -> Optional[Dict[str, Any]]:
        return self._latest.data.to_dict() if self._latest is not None else None

    async def shutdown(self):
        if self._session is not None:
            await self._session.disconnect()
            self._session = None
        self._latest = None


_mgr = _SessionManager()


@router.post('/api/adapter/connect')
async def api_connect(req: Optional[ConnectRequest] = None):
    try:
        return await _mgr.connect(req or ConnectRequest())
    except (ElmLinkError, ValueError) as e:
        logger.warning('Connect failed: %s', e)
        raise _http_error(e)


@router.post('/api/adapter/disconnect')
async def api_disconnect():
    return await _mgr.disconnect()


@router.get('/api/adapter/status')
def api_status():
    return _mgr.status()


@router.get('/api/adapter/info')
async def api_info():
    try:
        info = await _mgr.session.get_adapter_info()
    except ElmLinkError as e:
        raise _http_error(e)
    return info.to_dict()


@router.get('/api/diag/dtcs')
async def api_read_dtcs():
    try:
        report = await _mgr.session.read_dtcs()
    except ElmLinkError as e:
        raise _http_error(e)
    return report.to_dict()


@router.post('/api/diag/clear_dtcs')
async def api_clear_dtcs(force: bool = False):
    # clearing erases freeze-frame data on the vehicle
    if not force:
        raise HTTPException(status_code=400, detail='clearing DTCs requires force=true')
    try:
        ok = await _mgr.session.clear_dtcs()
    except ElmLinkError as e:
        raise _http_error(e)
    return {'cleared': ok}


@router.get('/api/diag/live')
async def api_live():
    try:
        sample = await _mgr.session.read_live_data()
    except ElmLinkError as e:
        raise _http_error(e)
    return sample.to_dict()


@router.get('/api/diag/vin')
async def api_vin():
    try:
        vin, source = await _mgr.session.read_vin_with_source()
    except ElmLinkError as e:
        raise _http_error(e)
    return {'vin': vin, 'source': source.value}


@router.get('/api/dtc/{code}')
def api_lookup(code: str):
    norm = dtc_db.normalize_code(code)
    if not dtc_db.is_valid_code(norm):
        raise HTTPException(status_code=400, detail=f'invalid DTC code: {code}')
    info = dtc_db.lookup(norm)
    known = info is not None
    info = info or dtc_db.unknown_info(norm)
    return {
        'code': norm,
        'known': known,
        'description': info.description,
        'severity': info.severity.value,
        'category': info.category,
        'causes': list(info.causes),
    }


@router.post('/api/monitor/start')
async def api_monitor_start(req: Optional[MonitorRequest] = None):
    req = req or MonitorRequest()
    try:
        session = _mgr.session.start_monitoring(req.interval_ms)
    except ValueError as e:
        raise _http_error(e)
    return {'monitoring': True, 'interval_ms': session.interval_ms}


@router.post('/api/monitor/stop')
async def api_monitor_stop():
    stopped = _mgr.session.stop_monitoring()
    return {'monitoring': False, 'stopped': stopped}


@router.get('/api/monitor/latest')
def api_monitor_latest():
    return {'monitoring': _mgr.session.poller.active, 'sample': _mgr.latest(),
            'subscribers': _mgr.session.bus.subscriber_count(events.DATA)}
