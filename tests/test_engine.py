import asyncio

import pytest

from elmlink.engine import INIT_SEQUENCE, CommandEngine
from elmlink.emulator import EmulatorTransport
from elmlink.errors import CommandTimeout, InitializationFailed, NotConnected
from elmlink.protocols import parse_pid
from elmlink.transport import Transport


class ScriptedTransport(Transport):
    """Replies after `delay` seconds, in `chunk`-byte pieces; records overlap."""
    kind = 'fake'

    def __init__(self, replies, delay=0.02, chunk=4):
        super().__init__()
        self.replies = replies
        self.delay = delay
        self.chunk = chunk
        self.sent = []
        self.outstanding = 0
        self.max_outstanding = 0

    @property
    def is_open(self):
        return True

    async def send(self, data):
        cmd = data.decode('ascii').strip()
        self.sent.append(cmd)
        reply = self.replies.get(cmd)
        if reply is None:
            return
        self.outstanding += 1
        self.max_outstanding = max(self.max_outstanding, self.outstanding)
        loop = asyncio.get_running_loop()
        pieces = [reply[i:i + self.chunk] for i in range(0, len(reply), self.chunk)]
        for n, piece in enumerate(pieces, start=1):
            last = n == len(pieces)
            loop.call_later(self.delay + n * 0.001, self._piece, piece, last)

    def _piece(self, piece, last):
        if last:
            self.outstanding -= 1
        self._deliver(piece)

    async def close(self):
        pass


async def _open(transport):
    await transport.open(await transport.discover())
    return transport


@pytest.mark.asyncio
async def test_execute_reassembles_fragmented_reply(fast_config):
    t = await _open(EmulatorTransport(chunk_size=3))
    engine = CommandEngine(t, fast_config)
    resp = await engine.execute('010C')
    assert resp.command == '010C'
    assert resp.elapsed_ms >= 0
    assert parse_pid('010C', resp) == 850.0


@pytest.mark.asyncio
async def test_execute_accepts_bare_cr_termination(fast_config):
    t = await _open(EmulatorTransport(prompt=False))
    engine = CommandEngine(t, fast_config)
    resp = await engine.execute('ATRV')
    assert '12.6V' in resp.text
    assert '>' not in resp.text


@pytest.mark.asyncio
async def test_timeout_discards_buffer_and_next_command_works(fast_config):
    t = await _open(EmulatorTransport(script={'0105': None}))
    engine = CommandEngine(t, fast_config)
    with pytest.raises(CommandTimeout) as exc:
        await engine.execute('0105', timeout_ms=50)
    assert exc.value.command == '0105'
    assert exc.value.elapsed_ms >= 40
    assert not engine.busy
    resp = await engine.execute('010D')
    assert parse_pid('010D', resp) == 0.0


@pytest.mark.asyncio
async def test_explicit_zero_timeout_is_not_the_default(fast_config):
    t = ScriptedTransport({'010D': b'41 0D 20\r\r>'}, delay=0.05)
    engine = CommandEngine(t, fast_config)
    with pytest.raises(CommandTimeout) as exc:
        await engine.execute('010D', timeout_ms=0)
    assert exc.value.elapsed_ms < fast_config.command_timeout_ms
    await asyncio.sleep(0.1)
    resp = await engine.execute('010D')
    assert parse_pid('010D', resp) == 32.0


@pytest.mark.asyncio
async def test_late_reply_is_dropped(fast_config):
    t = ScriptedTransport({'0105': b'41 05 7B\r\r>', '010D': b'41 0D 20\r\r>'}, delay=0.15)
    engine = CommandEngine(t, fast_config)
    with pytest.raises(CommandTimeout):
        await engine.execute('0105', timeout_ms=50)
    # let the stale reply arrive while nothing is in flight
    await asyncio.sleep(0.2)
    t.delay = 0.01
    resp = await engine.execute('010D')
    assert parse_pid('010D', resp) == 32.0


@pytest.mark.asyncio
async def test_concurrent_callers_never_overlap(fast_config):
    replies = {f'01{pid}': f'41 {pid} 10 20\r\r>'.encode() for pid in ('04', '05', '0C', '0D', '11')}
    t = ScriptedTransport(replies, delay=0.02)
    engine = CommandEngine(t, fast_config)
    results = await asyncio.gather(*(engine.execute(cmd) for cmd in replies))
    assert t.max_outstanding == 1
    assert t.sent == list(replies)
    for cmd, resp in zip(replies, results):
        assert resp.command == cmd
        assert resp.text.startswith('41 ' + cmd[2:])


@pytest.mark.asyncio
async def test_abort_pending_releases_guard(fast_config):
    t = await _open(EmulatorTransport(silent=['0902']))
    engine = CommandEngine(t, fast_config)
    task = asyncio.ensure_future(engine.execute('0902', timeout_ms=5000))
    await asyncio.sleep(0.02)
    assert engine.in_flight == '0902'
    assert engine.abort_pending('test') is True
    with pytest.raises(CommandTimeout):
        await asyncio.wait_for(task, 1.0)
    assert not engine.busy
    assert engine.abort_pending('idle') is False


@pytest.mark.asyncio
async def test_shutdown_refuses_until_reopened(fast_config):
    t = await _open(EmulatorTransport())
    engine = CommandEngine(t, fast_config)
    engine.shutdown()
    with pytest.raises(NotConnected):
        await engine.execute('ATI')
    engine.open()
    resp = await engine.execute('ATI')
    assert 'ELM327' in resp.text


@pytest.mark.asyncio
async def test_execute_on_closed_transport(fast_config):
    engine = CommandEngine(EmulatorTransport(), fast_config)
    with pytest.raises(NotConnected):
        await engine.execute('ATI')


@pytest.mark.asyncio
async def test_initialize_runs_sequence_in_order(fast_config):
    t = await _open(EmulatorTransport())
    seen = []
    engine = CommandEngine(t, fast_config, on_response=seen.append)
    responses = await engine.initialize()
    assert t.sent == list(INIT_SEQUENCE)
    assert [r.command for r in responses] == list(INIT_SEQUENCE)
    assert len(seen) == len(INIT_SEQUENCE)
    # echo and spaces are off afterwards
    resp = await engine.execute('010D')
    assert resp.text.strip() == '410D00'


@pytest.mark.asyncio
async def test_initialize_retries_step_then_fails(fast_config):
    t = await _open(EmulatorTransport(silent=['ATE0']))
    engine = CommandEngine(t, fast_config.with_overrides(command_timeout_ms=30))
    with pytest.raises(InitializationFailed) as exc:
        await engine.initialize()
    assert exc.value.command == 'ATE0'
    assert t.sent.count('ATE0') == 3
    assert 'ATL0' not in t.sent


@pytest.mark.asyncio
async def test_initialize_fails_on_adapter_error(fast_config):
    t = await _open(EmulatorTransport(script={'ATSP0': '?'}))
    engine = CommandEngine(t, fast_config)
    with pytest.raises(InitializationFailed):
        await engine.initialize()
    assert t.sent[-1] == 'ATSP0'
