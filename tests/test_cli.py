import pytest

from elmlink import elmlink_cli


def run(capsys, *argv):
    elmlink_cli.main(['--transport', 'emulator', *argv])
    return capsys.readouterr().out


def test_lookup(capsys):
    out = run(capsys, 'lookup', 'p0301')
    assert 'P0301: Cylinder 1 misfire detected' in out
    assert 'severity: high' in out


def test_lookup_invalid_code(capsys):
    with pytest.raises(SystemExit) as exc:
        run(capsys, 'lookup', 'nope')
    assert exc.value.code == 2


def test_dtc_against_emulator(capsys):
    assert 'No DTCs stored' in run(capsys, 'dtc')


def test_clear_requires_force(capsys):
    with pytest.raises(SystemExit) as exc:
        run(capsys, 'clear')
    assert exc.value.code == 2
    assert 'Clear DTCs: success' in run(capsys, 'clear', '--force')


def test_vin_and_info(capsys):
    assert 'VIN: 1HGCM82633A004352' in run(capsys, 'vin')
    out = run(capsys, 'info')
    assert 'Voltage: 12.6V' in out
    assert 'Responding: yes' in out


def test_live_prints_requested_samples(capsys):
    out = run(capsys, 'live', '--count', '2', '--interval', '10')
    lines = [line for line in out.splitlines() if line.startswith('[real]')]
    assert len(lines) == 2
    assert 'rpm=850' in lines[0]


def test_scan_emulator(capsys):
    assert 'Found emulator adapter: ELM327 Emulator' in run(capsys, 'scan')


def test_connect_error_exits_2(capsys, monkeypatch):
    monkeypatch.setenv('ELMLINK_DEVICE', '/dev/does-not-exist')
    with pytest.raises(SystemExit) as exc:
        elmlink_cli.main(['--transport', 'serial', 'dtc'])
    assert exc.value.code == 2
    assert 'Error:' in capsys.readouterr().out
