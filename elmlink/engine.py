"""Command protocol engine.

Turns a command string into a correlated, timed `RawResponse`. Exactly one
command is in flight per engine: callers queue on an asyncio lock, and the
next command is written only after the previous one has either been answered
or timed out.

A reply is complete when the adapter prints its ``>`` prompt. Some firmware
variants omit the prompt, so a buffer that ends in CR/LF after a real reply
line and then stays quiet for `settle_ms` is also treated as complete.
"""
import asyncio
from typing import Callable, List, Optional, Sequence

from .config import LinkConfig
from .errors import CommandTimeout, InitializationFailed, NotConnected
from .logger import get_logger
from .models import Command, RawResponse
from .protocols import adapter_error
from .transport import Transport

logger = get_logger(__name__)

INIT_SEQUENCE = ('ATZ', 'ATE0', 'ATL0', 'ATH0', 'ATS0', 'ATSP0')

_INFO_PREFIXES = (b'SEARCHING', b'BUS INIT')


class CommandEngine:
    def __init__(self, transport: Transport, config: Optional[LinkConfig] = None,
                 on_response: Optional[Callable[[RawResponse], None]] = None):
        self._transport = transport
        self.config = config or LinkConfig()
        self._on_response = on_response
        self._lock = asyncio.Lock()
        self._buffer = bytearray()
        self._pending: Optional[asyncio.Future] = None
        self._current: Optional[Command] = None
        self._settle_handle: Optional[asyncio.TimerHandle] = None
        self._accepting = True
        transport.subscribe(self._on_bytes)

    @property
    def transport(self) -> Transport:
        return self._transport

    @property
    def in_flight(self) -> Optional[str]:
        """Text of the command currently awaiting its reply, if any."""
        return self._current.text if self._current else None

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    # -- inbound ----------------------------------------------------------

    def _on_bytes(self, chunk: bytes) -> None:
        fut = self._pending
        if fut is None or fut.done():
            logger.debug('Dropping %r: no command in flight', chunk)
            return
        self._buffer.extend(chunk)
        self._cancel_settle()
        idx = self._buffer.find(b'>')
        if idx != -1:
            self._complete(bytes(self._buffer[:idx]))
            return
        if self._buffer.endswith((b'\r', b'\n')) and self._has_reply_line():
            self._settle_handle = fut.get_loop().call_later(self.config.settle_ms / 1000.0, self._settle)

    def _has_reply_line(self) -> bool:
        echo = self._current.text.upper().encode('ascii') if self._current else b''
        for line in self._buffer.replace(b'\n', b'\r').split(b'\r'):
            line = line.strip().upper()
            if not line or line == echo or line.startswith(_INFO_PREFIXES):
                continue
            return True
        return False

    def _settle(self) -> None:
        self._settle_handle = None
        if self._pending is not None and not self._pending.done():
            logger.debug('Reply to %s terminated by line end without prompt', self.in_flight)
            self._complete(bytes(self._buffer))

    def _complete(self, data: bytes) -> None:
        self._cancel_settle()
        if self._pending is not None and not self._pending.done():
            self._pending.set_result(data)

    def _cancel_settle(self) -> None:
        if self._settle_handle is not None:
            self._settle_handle.cancel()
            self._settle_handle = None

    # -- outbound ---------------------------------------------------------

    async def execute(self, command_text: str, timeout_ms: Optional[int] = None) -> RawResponse:
        """Send one command and wait for its complete reply.

        Raises NotConnected if the transport is closed and CommandTimeout if
        no terminated reply arrives within `timeout_ms`; the partial buffer is
        discarded in that case so the caller can simply re-issue.
        """
        if not (self._accepting and self._transport.is_open):
            raise NotConnected('adapter not connected', command=command_text)
        async with self._lock:
            if not (self._accepting and self._transport.is_open):
                raise NotConnected('adapter disconnected while queued', command=command_text)
            timeout = self.config.command_timeout_ms if timeout_ms is None else timeout_ms
            cmd = Command(text=command_text, timeout_ms=int(timeout))
            fut = asyncio.get_running_loop().create_future()
            self._buffer.clear()
            self._pending, self._current = fut, cmd
            try:
                logger.debug('>> %s', cmd.text)
                await self._transport.send((cmd.text + '\r').encode('ascii'))
                data = await asyncio.wait_for(fut, cmd.timeout_ms / 1000.0)
            except asyncio.TimeoutError:
                logger.warning('%s timed out after %dms, discarding %d buffered bytes',
                               cmd.text, cmd.timeout_ms, len(self._buffer))
                raise CommandTimeout('no reply from adapter', command=cmd.text, elapsed_ms=cmd.elapsed_ms()) from None
            finally:
                self._cancel_settle()
                self._buffer.clear()
                self._pending, self._current = None, None

        resp = RawResponse(data=data, command=cmd.text, elapsed_ms=cmd.elapsed_ms())
        logger.debug('<< %s %r (%.0fms)', cmd.text, resp.text, resp.elapsed_ms)
        if self._on_response is not None:
            self._on_response(resp)
        return resp

    def open(self) -> None:
        """Accept commands again after `shutdown`."""
        self._accepting = True

    def shutdown(self, reason: str = 'disconnect') -> None:
        """Refuse new commands and abort the in-flight one."""
        self._accepting = False
        self.abort_pending(reason)

    def abort_pending(self, reason: str = 'aborted') -> bool:
        """Fail the in-flight command with CommandTimeout and free the guard."""
        fut, cmd = self._pending, self._current
        if fut is None or fut.done():
            return False
        logger.info('Aborting in-flight %s: %s', cmd.text if cmd else '?', reason)
        fut.set_exception(CommandTimeout(reason, command=cmd.text if cmd else None,
                                         elapsed_ms=cmd.elapsed_ms() if cmd else None))
        return True

    # -- handshake --------------------------------------------------------

    async def initialize(self, sequence: Sequence[str] = INIT_SEQUENCE) -> List[RawResponse]:
        """Run the adapter init sequence strictly in order.

        A step that times out is re-issued up to `command_retries` times in a
        row; exhausting that, or any adapter error reply, aborts the handshake
        with InitializationFailed.
        """
        responses = []
        for i, text in enumerate(sequence):
            timeout_ms = self.config.reset_timeout_ms if text == 'ATZ' else self.config.command_timeout_ms
            resp = await self._init_step(text, timeout_ms)
            err = adapter_error(resp)
            if err:
                raise InitializationFailed(f'adapter rejected {text}: {err}', command=text, elapsed_ms=resp.elapsed_ms)
            responses.append(resp)
            if self.config.init_pause_ms and i < len(sequence) - 1:
                await asyncio.sleep(self.config.init_pause_ms / 1000.0)
        logger.info('Adapter initialized (%s)', ' '.join(sequence))
        return responses

    async def _init_step(self, text: str, timeout_ms: int) -> RawResponse:
        retries = max(1, self.config.command_retries)
        last_exc = None
        for attempt in range(1, retries + 1):
            try:
                return await self.execute(text, timeout_ms)
            except CommandTimeout as e:
                last_exc = e
                logger.warning('Init step %s timed out (attempt %d/%d)', text, attempt, retries)
        raise InitializationFailed(f'{text} timed out {retries} times in a row', command=text,
                                   elapsed_ms=last_exc.elapsed_ms) from last_exc
