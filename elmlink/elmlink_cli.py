#!/usr/bin/env python3
"""Command line front end over DiagnosticSession."""
import argparse
import asyncio
import logging
import sys

from elmlink import dtc_db
from elmlink.config import TRANSPORTS, LinkConfig
from elmlink.errors import ElmLinkError
from elmlink.session import DiagnosticSession
from elmlink.transport import create_transport


def _config(args) -> LinkConfig:
    return LinkConfig.from_env(transport=args.transport, device=args.device, command_timeout_ms=args.timeout)


def _print_sample(sample):
    def fmt(v, unit):
        return '-' if v is None else f'{v:g}{unit}'
    print(f'[{sample.source.value}] rpm={fmt(sample.rpm, "")} speed={fmt(sample.speed_kmh, "km/h")} '
          f'coolant={fmt(sample.coolant_temp_c, "C")} fuel={fmt(sample.fuel_level_pct, "%")} '
          f'throttle={fmt(sample.throttle_pct, "%")} intake={fmt(sample.intake_temp_c, "C")}')


async def scan(args):
    cfg = _config(args)
    transport = create_transport(cfg)
    handle = await transport.discover(cfg.name_prefixes)
    print(f'Found {handle.kind} adapter: {handle.label} ({handle.address})')


async def read_dtc(args):
    async with DiagnosticSession(config=_config(args)) as session:
        report = await session.read_dtcs()
    if not report.dtcs:
        print('No DTCs stored')
        return
    print(f'DTCs ({report.source.value}):')
    for d in report:
        print(f' - {d.code} [{d.status.value}] {d.severity.value}: {d.description}')


async def clear_dtc(args):
    async with DiagnosticSession(config=_config(args)) as session:
        ok = await session.clear_dtcs()
    print('Clear DTCs:', 'success' if ok else 'failed')
    if not ok:
        sys.exit(1)


async def live(args):
    session = DiagnosticSession(config=_config(args))
    done = asyncio.Event()
    received = []

    def on_data(event):
        if event.type != 'liveData' or done.is_set():
            return
        received.append(event.data)
        _print_sample(event.data)
        if len(received) >= args.count:
            done.set()

    async with session:
        session.on_data_received(on_data)
        session.start_monitoring(args.interval)
        await done.wait()
        session.stop_monitoring()


async def vin(args):
    async with DiagnosticSession(config=_config(args)) as session:
        value = await session.read_vin()
    print('VIN:', value or 'unavailable')


async def info(args):
    async with DiagnosticSession(config=_config(args)) as session:
        ai = await session.get_adapter_info()
        alive = await session.test_connection()
    print('Adapter:', ai.version or '?')
    print('Voltage:', f'{ai.voltage:.1f}V' if ai.voltage is not None else '?')
    print('Protocol:', ai.protocol or '?')
    print('Responding:', 'yes' if alive else 'no')


def lookup(args):
    code = dtc_db.normalize_code(args.code)
    if not dtc_db.is_valid_code(code):
        print('Invalid DTC code:', args.code)
        sys.exit(2)
    entry = dtc_db.lookup(code) or dtc_db.unknown_info(code)
    print(f'{code}: {entry.description}')
    print(f'  severity: {entry.severity.value}  category: {entry.category}')
    for cause in entry.causes:
        print('  -', cause)


_ASYNC_COMMANDS = {
    'scan': scan,
    'dtc': read_dtc,
    'clear': clear_dtc,
    'live': live,
    'vin': vin,
    'info': info,
}


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog='elmlink')
    p.add_argument('--transport', choices=TRANSPORTS, default=None, help='Adapter link (default: ble)')
    p.add_argument('--device', default=None, help='BLE address or serial port path')
    p.add_argument('--timeout', type=int, default=None, help='Command timeout in ms')
    p.add_argument('-v', '--verbose', action='store_true', help='Log commands and replies')
    sub = p.add_subparsers(dest='cmd')
    sub.add_parser('scan', help='Discover an adapter without connecting')
    sub.add_parser('dtc', help='Read stored and pending DTCs')
    clear_p = sub.add_parser('clear', help='Clear DTCs (erases freeze frame data)')
    clear_p.add_argument('--force', action='store_true')
    live_p = sub.add_parser('live', help='Stream live data')
    live_p.add_argument('--count', type=int, default=5)
    live_p.add_argument('--interval', type=int, default=2000, help='Poll interval in ms')
    sub.add_parser('vin', help='Read the vehicle VIN')
    sub.add_parser('info', help='Adapter version, voltage and protocol')
    lookup_p = sub.add_parser('lookup', help='Describe a DTC code')
    lookup_p.add_argument('code')
    return p


def main(argv=None):
    p = build_parser()
    args = p.parse_args(argv)
    if not args.cmd:
        p.print_help()
        return
    if args.verbose:
        logging.getLogger('elmlink').setLevel(logging.DEBUG)
    if args.cmd == 'lookup':
        lookup(args)
        return
    if args.cmd == 'clear' and not args.force:
        p.error('clear erases stored DTCs and freeze frames; pass --force to proceed')
    if args.cmd == 'live' and (args.count < 1 or args.interval < 1):
        p.error('--count and --interval must be positive')
    try:
        asyncio.run(_ASYNC_COMMANDS[args.cmd](args))
    except (ElmLinkError, ValueError) as e:
        print('Error:', e)
        sys.exit(2)
    except KeyboardInterrupt:
        print('Interrupted')
        sys.exit(130)


if __name__ == '__main__':
    main()
