import pytest

from elmlink.config import LinkConfig


@pytest.fixture(autouse=True)
def audit_log(tmp_path, monkeypatch):
    path = tmp_path / 'audit.log'
    monkeypatch.setenv('ELMLINK_AUDIT_LOG', str(path))
    return path


@pytest.fixture
def fast_config():
    # short timeouts so timeout paths finish quickly
    return LinkConfig(
        transport='emulator',
        command_timeout_ms=300,
        reset_timeout_ms=300,
        vin_timeout_ms=300,
        init_pause_ms=0,
        settle_ms=20,
        monitor_interval_ms=20,
    )
