import pytest

from elmlink.errors import ParseError
from elmlink.models import DTCStatus, RawResponse
from elmlink.protocols import (adapter_error, decode_dtc_bytes, decode_pid, encode_dtc, get_pid, hex_messages,
                               parse_clear_ack, parse_dtc_list, parse_pid, parse_version, parse_vin, parse_voltage)

VIN = '1HGCM82633A004352'


def test_parse_dtc_list_empty():
    assert parse_dtc_list(b'') == []
    assert parse_dtc_list('NO DATA\r\r>') == []


def test_parse_dtc_list_legacy_line():
    # no count byte: 43 + three code slots, zero slots skipped
    assert parse_dtc_list(b'43 01 33 00 00 00 00\r>') == [('P0133', DTCStatus.ACTIVE)]


def test_parse_dtc_list_can_count_byte():
    raw = RawResponse(data=b'43 02 01 71 03 01\r\r', command='03')
    assert [c for c, _ in parse_dtc_list(raw)] == ['P0171', 'P0301']


def test_parse_dtc_list_pending_status():
    raw = RawResponse(data=b'47 01 04 20\r\r>', command='07')
    assert parse_dtc_list(raw, DTCStatus.PENDING) == [('P0420', DTCStatus.PENDING)]


def test_parse_dtc_list_multiframe():
    raw = '00A\r0: 43 04 01 71 03 01\r1: 04 20 01 28\r\r>'
    assert [c for c, _ in parse_dtc_list(raw)] == ['P0171', 'P0301', 'P0420', 'P0128']


def test_parse_dtc_list_roundtrip_with_encoder():
    codes = ['P0171', 'C0035', 'B1234', 'U0100']
    payload = bytes([0x43]) + b''.join(encode_dtc(c) for c in codes)
    assert [c for c, _ in parse_dtc_list(payload.hex(' ').upper())] == codes


def test_decode_dtc_bytes_covers_whole_code_space():
    failures = []
    for letter in 'PCBU':
        for value in range(0x4000):
            code = f'{letter}{value:04X}'
            if code == 'P0000':
                continue
            if decode_dtc_bytes(encode_dtc(code)) != [(code, DTCStatus.ACTIVE)]:
                failures.append(code)
    assert failures == []
    assert decode_dtc_bytes(b'\x00\x00') == []


def test_decode_dtc_bytes_printable_payload():
    # tab bytes and '?' are code bytes here, not adapter text
    assert decode_dtc_bytes(b'\x09\x09??', DTCStatus.PENDING) == [
        ('P0909', DTCStatus.PENDING), ('P3F3F', DTCStatus.PENDING)]


def test_decode_dtc_bytes_odd_length():
    with pytest.raises(ParseError):
        decode_dtc_bytes(b'\x01')


def test_parse_dtc_list_adapter_error():
    with pytest.raises(ParseError):
        parse_dtc_list('CAN ERROR\r\r>')


def test_encode_dtc_rejects_invalid():
    with pytest.raises(ValueError):
        encode_dtc('X1234')


def test_decode_pid_from_data_bytes():
    assert decode_pid('010C', bytes([0x1A, 0xF8])) == 1726
    # printable data bytes are still data, not hex text
    assert decode_pid('010C', b'AB') == (0x41 * 256 + 0x42) / 4
    assert decode_pid('010D', b'2') == 50.0
    assert decode_pid('0105', b'A') == 25.0
    assert decode_pid('010C', b'00') == (0x30 * 256 + 0x30) / 4


def test_parse_pid_drops_line_noise():
    raw = RawResponse(data=b'\x0041 0C 1A F8\r\r', command='010C')
    assert parse_pid('010C', raw) == 1726.0
    assert parse_pid('010D', b'41 0D \xff3C\r\r>') == 60.0


def test_parse_pid_never_reads_reply_text_as_data():
    with pytest.raises(ParseError):
        parse_pid('010C', b'\x00\xff')


def test_parse_pid_rpm_from_reply():
    assert parse_pid('010C', '41 0C 1A F8\r\r>') == 1726.0
    raw = RawResponse(data=b'010C\r41 0C 0B B8\r\r', command='010C')
    assert parse_pid('0C', raw) == 750.0


def test_parse_pid_formulas():
    assert parse_pid('0105', '41 05 7B') == 83.0
    assert parse_pid('0111', '41 11 FF') == 100.0
    assert parse_pid('010D', '410D3C') == 60.0
    assert parse_pid('010A', '41 0A 64') == 300.0
    assert parse_pid('0110', '41 10 01 5E') == 3.5


def test_parse_pid_ignores_searching_line():
    assert parse_pid('010D', 'SEARCHING...\r41 0D 20\r\r>') == 32.0


@pytest.mark.parametrize('reply', ['41 0C 1A', '41 0D 1A F8', 'NO DATA', ''])
def test_parse_pid_errors(reply):
    with pytest.raises(ParseError):
        parse_pid('010C', reply)


def test_get_pid_unsupported():
    with pytest.raises(ParseError):
        get_pid('0199')


def test_parse_vin_can_multiframe():
    raw = ('014\r'
           '0: 49 02 01 31 48 47\r'
           '1: 43 4D 38 32 36 33 33\r'
           '2: 41 30 30 34 33 35 32\r\r>')
    assert parse_vin(raw) == VIN


def test_parse_vin_legacy_lines():
    raw = ('49 02 01 00 00 00 31\r'
           '49 02 02 48 47 43 4D\r'
           '49 02 03 38 32 36 33\r'
           '49 02 04 33 41 30 30\r'
           '49 02 05 34 33 35 32\r\r>')
    assert parse_vin(raw) == VIN


def test_parse_vin_too_short():
    with pytest.raises(ParseError):
        parse_vin('49 02 01 31 48 47')


def test_parse_clear_ack():
    assert parse_clear_ack('44\r\r>') is True
    assert parse_clear_ack('OK\r>') is True
    assert parse_clear_ack('?\r>') is False
    assert parse_clear_ack('NO DATA') is False


def test_adapter_error_detection():
    assert adapter_error('?\r>') == '?'
    assert adapter_error('UNABLE TO CONNECT\r>') == 'UNABLE TO CONNECT'
    assert adapter_error('SEARCHING...\r41 0C 1A F8\r>') is None


def test_hex_messages_drops_echo():
    raw = RawResponse(data=b'0105\r41 05 7B\r\r', command='0105')
    assert hex_messages(raw) == [bytes([0x41, 0x05, 0x7B])]


def test_version_and_voltage():
    assert 'ELM327' in parse_version('ATI\rELM327 v1.5\r\r>')
    assert parse_voltage('12.4V\r\r>') == 12.4
    with pytest.raises(ParseError):
        parse_voltage('?\r>')
