"""Tests for protocol tables and the command/response codec."""

from dataclasses import replace

import pytest

from qoob_flasher.errors import BusBusy, ChecksumInvalid, ProtocolMismatch, UnsupportedDevice
from qoob_flasher.protocol.codec import (
    Bus,
    Erase,
    QoobCodec,
    Read,
    Reset,
    Status,
    Write,
    crc16_xmodem,
    sum8,
    xor8,
)
from qoob_flasher.protocol.tables import (
    DEFAULT_TABLE,
    FlashGeometry,
    find_table,
    get_table,
    list_tables,
)

from conftest import make_table


def test_crc16_xmodem_vector_123456789():
    assert crc16_xmodem(b"123456789") == 0x31C3


def test_sum8_and_xor8():
    assert sum8(b"\xFF\x02") == 0x01
    assert xor8(b"\x0F\xF0\x01") == 0xFE


class TestTables:
    """Registry lookups and geometry validation."""

    def test_default_table_is_registered(self):
        assert DEFAULT_TABLE in list_tables()
        table = get_table()
        assert table.usb.vendor_id == 0x03EB
        assert table.usb.product_id == 0x0001
        assert table.geometry.total_size == 2 * 1024 * 1024
        assert table.geometry.pages_per_sector == 2

    def test_unknown_table_raises(self):
        with pytest.raises(ValueError, match="Unknown protocol table"):
            get_table("qoob-sx")

    def test_find_table_by_ids(self):
        assert find_table(0x03EB, 0x0001).name == DEFAULT_TABLE
        assert find_table(0x1234, 0x5678) is None

    def test_unknown_opcode_raises(self):
        with pytest.raises(ValueError):
            get_table().opcode("format")

    def test_geometry_rejects_pages_not_tiling_sectors(self):
        with pytest.raises(UnsupportedDevice):
            FlashGeometry(page_size=300, sector_size=1024, sector_count=4).validate()
        with pytest.raises(UnsupportedDevice):
            FlashGeometry(page_size=2048, sector_size=1024, sector_count=4).validate()


class TestEncode:
    """Command frames follow the table layout byte for byte."""

    @pytest.fixture
    def codec(self):
        return QoobCodec(get_table())

    def test_read_frame(self, codec):
        (frame,) = codec.encode(Read(address=0x123456, length=0x8000))
        assert len(frame) == 65
        assert frame[:7] == bytes([0x00, 0x04, 0x12, 0x34, 0x56, 0x80, 0x00])
        assert frame[7:] == bytes(58)

    def test_erase_frame(self, codec):
        (frame,) = codec.encode(Erase(sector=5))
        assert frame[:5] == bytes([0x00, 0x02, 0x05, 0x00, 0x00])

    def test_bus_frames(self, codec):
        (acquire,) = codec.encode(Bus(acquire=True))
        (release,) = codec.encode(Bus(acquire=False))
        assert acquire[:4] == bytes([0x00, 0x08, 0x00, 0x01])
        assert release[:4] == bytes([0x00, 0x08, 0x00, 0x00])

    def test_status_and_reset_frames(self, codec):
        assert codec.encode(Status())[0][:2] == b"\x00\x05"
        assert codec.encode(Reset())[0][:2] == b"\x00\x01"

    def test_write_splits_payload_into_data_reports(self, codec):
        data = bytes(range(100))
        frames = codec.encode(Write(address=0x8000, data=data))
        # Command plus ceil(100 / 63) data reports
        assert len(frames) == 3
        assert frames[0][:7] == bytes([0x00, 0x03, 0x00, 0x80, 0x00, 0x00, 100])
        assert frames[1][2:65] == data[:63]
        assert frames[2][2:2 + 37] == data[63:]
        assert frames[2][2 + 37:] == bytes(63 - 37)

    def test_encode_is_pure(self, codec):
        op = Read(address=0, length=16)
        assert codec.encode(op) == codec.encode(op)

    def test_transfer_over_maximum_rejected(self, codec):
        with pytest.raises(ValueError, match="exceeds maximum"):
            codec.encode(Read(address=0, length=0x8001))

    def test_address_out_of_field_rejected(self, codec):
        with pytest.raises(ValueError):
            codec.encode(Read(address=1 << 24, length=1))

    def test_response_count(self, codec):
        assert codec.response_count(Read(0, 63)) == 1
        assert codec.response_count(Read(0, 64)) == 2
        assert codec.response_count(Erase(0)) == 0


class TestDecode:
    """Response validation and status decoding."""

    def _status_frame(self, codec, busy=0, bus=1):
        frame = bytearray(65)
        frame[2] = busy
        frame[4] = bus
        return codec.seal(frame)

    def test_decode_status(self):
        codec = QoobCodec(get_table())
        report = codec.decode(self._status_frame(codec, busy=1, bus=0))
        assert report.busy
        assert report.bus == 0

    def test_decode_data_strips_framing(self):
        codec = QoobCodec(get_table())
        frame = codec.data_frame(b"\xAA" * 63)
        assert codec.decode(frame, kind="data") == b"\xAA" * 63

    def test_wrong_length_is_protocol_mismatch(self):
        codec = QoobCodec(get_table())
        with pytest.raises(ProtocolMismatch):
            codec.decode_status(bytes(64))

    def test_wrong_report_id_is_protocol_mismatch(self):
        codec = QoobCodec(get_table())
        frame = bytearray(self._status_frame(codec))
        frame[0] = 0x02
        with pytest.raises(ProtocolMismatch):
            codec.decode_status(bytes(frame))

    def test_bad_checksum_is_checksum_invalid(self):
        """A corrupted trailer must not be reported as a protocol mismatch."""
        codec = QoobCodec(make_table(checksum="crc16-xmodem", checksum_width=2))
        frame = bytearray(self._status_frame(codec))
        frame[-1] ^= 0xFF
        with pytest.raises(ChecksumInvalid) as excinfo:
            codec.decode_status(bytes(frame))
        assert not isinstance(excinfo.value, ProtocolMismatch)

    @pytest.mark.parametrize("algorithm,width", [("sum8", 1), ("xor8", 1), ("crc16-xmodem", 2)])
    def test_sealed_frames_pass_own_check(self, algorithm, width):
        codec = QoobCodec(make_table(checksum=algorithm, checksum_width=width))
        frame = codec.data_frame(b"payload")
        assert codec.decode_data(frame).startswith(b"payload")

    def test_checksum_covers_everything_after_report_id(self):
        codec = QoobCodec(make_table(checksum="crc16-xmodem", checksum_width=2))
        (frame,) = codec.encode(Read(address=0x100, length=0x10))
        assert int.from_bytes(frame[-2:], "big") == crc16_xmodem(frame[1:-2])

    def test_bus_busy_bit_raises(self):
        codec = QoobCodec(get_table())
        with pytest.raises(BusBusy):
            codec.decode_status(self._status_frame(codec, bus=0x03))

    def test_unknown_checksum_rejected(self):
        table = replace(get_table(), frame=replace(get_table().frame, checksum="md5"))
        with pytest.raises(ValueError):
            QoobCodec(table)

    def test_unknown_kind_rejected(self):
        codec = QoobCodec(get_table())
        with pytest.raises(ValueError):
            codec.decode(bytes(65), kind="audio")
