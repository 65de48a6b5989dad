import pytest

from alpaca_hub.backends.codes import SerialCode
from alpaca_hub.protocol import ioptron
from alpaca_hub.protocol.ioptron import IoptronFraming
from alpaca_hub.protocol.robofocus import (
    RobofocusFraming,
    calculate_checksum,
    decode_backlash,
    decode_packet,
    encode_backlash,
    encode_command,
)
from alpaca_hub.utils.exceptions import BackendError, ChecksumMismatchError, ParseError


def test_checksum() -> None:
    assert calculate_checksum("FG002500") == 180
    with pytest.raises(ValueError):
        calculate_checksum("FG0025")


def test_encode_command() -> None:
    assert encode_command("FG", 2500) == b"FG002500\xb4"
    assert len(encode_command("FV")) == 9


@pytest.mark.parametrize("cmd,value", [("G", 1), ("XG", 1), ("FG", -1), ("FG", 1000000)])
def test_encode_command_rejects(cmd, value) -> None:
    with pytest.raises(ValueError):
        encode_command(cmd, value)


def test_decode_packet() -> None:
    packet = decode_packet(encode_command("FD", 4321))
    assert packet.cmd == "FD"
    assert packet.value == 4321
    assert packet.checksum_valid


def test_decode_float_firmware_version() -> None:
    message = "FV003.20"
    packet = decode_packet(message.encode("ascii") + bytes([calculate_checksum(message)]))
    assert packet.value == pytest.approx(3.2)


def test_decode_checksum_mismatch() -> None:
    raw = encode_command("FD", 4321)
    bad = raw[:8] + bytes([(raw[8] + 5) % 256])
    with pytest.raises(ChecksumMismatchError):
        decode_packet(bad)
    assert decode_packet(bad, verify=False).checksum_valid is False


@pytest.mark.parametrize("raw", [b"FD00", b"XD0000001", b"FDabcdef\x00"])
def test_decode_malformed(raw) -> None:
    with pytest.raises(ParseError):
        decode_packet(raw)


def test_backlash_encoding() -> None:
    assert encode_backlash(-20) == 200020
    assert encode_backlash(20) == 300020
    assert encode_backlash(0) == 300000
    assert decode_backlash(200020) == -20
    assert decode_backlash(300255) == 255
    with pytest.raises(ValueError):
        encode_backlash(256)


def test_robofocus_framing_splits_motion_chars_and_packets() -> None:
    framing = RobofocusFraming()
    packet = encode_command("FD", 100)
    buffer = bytearray(b"OI\x00" + packet + packet[:4])

    assert framing.split(buffer) == b"O"
    assert framing.split(buffer) == b"I"
    # Line noise is dropped
    assert framing.split(buffer) == packet
    assert framing.split(buffer) is None
    assert bytes(buffer) == packet[:4]

    buffer.extend(packet[4:])
    assert framing.split(buffer) == packet
    assert not buffer


def test_robofocus_framing_reply_detection() -> None:
    framing = RobofocusFraming()
    assert framing.is_reply(encode_command("FD", 1))
    assert not framing.is_reply(b"O")


def test_robofocus_framing_encode_error() -> None:
    with pytest.raises(BackendError) as info:
        RobofocusFraming().encode("FG", 10 ** 7)
    assert info.value.code == SerialCode.INVALID_VALUE


def test_ioptron_framing() -> None:
    framing = IoptronFraming()
    buffer = bytearray(b"0040#1")
    assert framing.split(buffer) == b"0040#"
    assert framing.split(buffer) is None
    assert bytes(buffer) == b"1"


def test_ioptron_framing_overflow() -> None:
    framing = IoptronFraming()
    buffer = bytearray(b"x" * (framing.max_buffer + 1))
    with pytest.raises(BackendError) as info:
        framing.split(buffer)
    assert info.value.code == SerialCode.BAD_FRAME
    assert not buffer


def test_ioptron_encode() -> None:
    framing = IoptronFraming()
    assert framing.encode(":GEP#") == (b":GEP#", None)
    assert framing.encode(":ST1#") == (b":ST1#", 1)
    with pytest.raises(BackendError):
        framing.encode("GEP")


def test_ioptron_commands() -> None:
    assert ioptron.set_ra_command(12.0) == ":SRA064800000#"
    assert ioptron.set_dec_command(-45.5) == ":Sd-16380000#"
    assert ioptron.set_dec_command(90.0) == ":Sd+32400000#"
    with pytest.raises(ValueError):
        ioptron.set_dec_command(91.0)
    assert ioptron.reply_size(":MountInfo#") is None
    assert ioptron.reply_size(":MS1#") == 1
