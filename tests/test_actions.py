"""Tests for the core workflow actions against the simulated chip."""

from unittest.mock import patch

import pytest

from qoob_flasher.core import (
    DeviceOptions,
    SafetyContext,
    WritePermissionError,
    dump_slot,
    erase_sectors,
    identify_device,
    list_devices,
    list_slots,
    put_file,
    read_flash,
    remove_slot,
    reset_device,
    verify_image,
    write_image,
)
from qoob_flasher.protocol import discovery

from conftest import make_table


def _pattern(length: int) -> bytes:
    return bytes((i * 13 + 1) & 0xFF for i in range(length))


def _dol(size: int = 1500) -> bytes:
    header = bytearray(256)
    header[0:4] = b"DOL\0"
    header[4:9] = b"Swiss"
    header[0xFC:0x100] = size.to_bytes(4, "big")
    return bytes(header) + b"\xA5" * (size - 256)


@pytest.fixture
def options(tmp_path):
    return DeviceOptions(
        table=make_table(),
        simulate=True,
        sim_image=str(tmp_path / "flash.bin"),
    )


@pytest.fixture
def safety():
    return SafetyContext(simulate=True)


class TestDeviceActions:
    """Identification and listing."""

    def test_identify(self, options):
        result = identify_device(options)
        assert result.ok
        assert result.metadata["info"]["product"] == "QOOB Chip Pro"
        assert result.metadata["simulated"] is True
        assert any("Simulated" in w for w in result.warnings)
        assert result.bytes_len == 8 * 1024

    def test_identify_without_device(self):
        with patch.object(discovery.hid, "enumerate", return_value=[]):
            result = identify_device(DeviceOptions())
        assert not result.ok
        assert result.metadata["error_class"] == "DeviceNotFound"
        assert result.metadata["exit_code"] == 2

    def test_list_devices_empty(self):
        with patch.object(discovery.hid, "enumerate", return_value=[]):
            result = list_devices()
        assert result.ok
        assert result.metadata["devices"] == []
        assert result.warnings

    def test_reset(self, options):
        result = reset_device(options)
        assert result.ok


class TestFlashActions:
    """Erase, write, read and verify."""

    def test_write_read_verify(self, options, safety, tmp_path):
        data = _pattern(600)
        result = write_image(data, 0, safety, options)
        assert result.ok, result.errors
        assert result.metadata["programmed"] == 768
        assert any("padded with 168" in w for w in result.warnings)
        assert any("Writing 600 bytes" in line for line in result.logs)

        assert verify_image(data, 0, options).ok

        out = tmp_path / "dump.bin"
        read = read_flash(0, 600, options, output_path=str(out))
        assert read.ok
        assert read.metadata["data"] == data
        assert out.read_bytes() == data
        assert read.hashes["sha256"] == result.hashes["sha256"]

    def test_verify_mismatch_reports_address(self, options, safety):
        write_image(b"\x00" * 256, 0, safety, options)
        result = verify_image(b"\x00" * 100 + b"\x01", 0, options)

        assert not result.ok
        assert result.metadata["error_class"] == "VerifyMismatch"
        assert result.metadata["exit_code"] == 5
        assert result.metadata["address"] == 100
        assert result.metadata["expected"][:1] == b"\x01"

    def test_write_with_erase(self, options, safety):
        write_image(b"\x00" * 256, 0, safety, options)
        result = write_image(b"\x0F" * 256, 0, safety, options, erase=True)
        assert result.ok
        assert read_flash(0, 256, options).metadata["data"] == b"\x0F" * 256

    def test_unaligned_write_fails_cleanly(self, options, safety):
        result = write_image(b"\x00" * 16, 10, safety, options)
        assert not result.ok
        assert result.metadata["error_class"] == "AlignmentError"
        assert result.metadata["exit_code"] == 1

    def test_unaligned_write_with_erase_leaves_flash_alone(self, options, safety, tmp_path):
        (tmp_path / "flash.bin").write_bytes(b"\x42" * 8 * 1024)
        result = write_image(b"\x11" * 10, 100, safety, options, erase=True)
        assert not result.ok
        assert result.metadata["error_class"] == "AlignmentError"
        assert read_flash(0, 1024, options).metadata["data"] == b"\x42" * 1024

    def test_write_past_end_with_erase_leaves_flash_alone(self, options, safety, tmp_path):
        (tmp_path / "flash.bin").write_bytes(b"\x42" * 8 * 1024)
        result = write_image(b"\x11" * 2048, 7 * 1024, safety, options, erase=True)
        assert not result.ok
        assert result.metadata["error_class"] == "FlashRangeError"
        assert read_flash(7 * 1024, 1024, options).metadata["data"] == b"\x42" * 1024

    def test_erase(self, options, safety):
        write_image(b"\x00" * 2048, 1024, safety, options)
        result = erase_sectors(range(1, 3), safety, options)
        assert result.ok
        assert result.region == "0x000400-0x000C00"
        assert result.bytes_len == 2048
        assert read_flash(1024, 2048, options).metadata["data"] == b"\xFF" * 2048

    def test_write_refused_without_permission(self):
        ctx = SafetyContext(write_enabled=False)
        with patch.object(discovery.hid, "enumerate") as mock_enum:
            with pytest.raises(WritePermissionError):
                write_image(b"\x00" * 256, 0, ctx, DeviceOptions())
            with pytest.raises(WritePermissionError):
                erase_sectors(range(0, 1), ctx, DeviceOptions())
        mock_enum.assert_not_called()


class TestSlotActions:
    """Filesystem workflows."""

    def test_put_list_dump_remove(self, options, safety, tmp_path):
        data = _dol()
        put = put_file(data, safety, options=options)
        assert put.ok, put.errors
        assert put.metadata["slot"] == 0
        assert put.metadata["header"]["type"] == "DOL"

        listing = list_slots(options)
        assert listing.ok
        assert listing.metadata["files"] == [{
            "slot": 0,
            "type": "DOL",
            "magic": "444f4c00",
            "description": "Swiss",
            "size": 1500,
            "sectors": 2,
        }]
        assert listing.metadata["sectors"][:3] == ["file", "file", "empty"]

        out = tmp_path / "swiss.dol"
        dumped = dump_slot(0, options, output_path=str(out))
        assert dumped.ok
        assert out.read_bytes() == data

        removed = remove_slot(0, safety, options)
        assert removed.ok
        assert list_slots(options).metadata["files"] == []

    def test_put_too_big(self, options, safety):
        result = put_file(_dol(size=9 * 1024), safety, options=options)
        assert not result.ok
        assert result.metadata["warning_code"] == "W_TOO_BIG"

    def test_put_occupied_slot(self, options, safety):
        put_file(_dol(), safety, slot=2, options=options)
        result = put_file(_dol(size=300), safety, slot=3, options=options)
        assert not result.ok
        assert result.metadata["error_class"] == "RangeOccupied"
        assert result.metadata["slot"] == 3

    def test_put_with_erase_refuses_to_cut_into_earlier_file(self, options, safety):
        first = _dol(size=3000)
        assert put_file(first, safety, slot=0, options=options).ok
        result = put_file(_dol(size=500), safety, slot=1, options=options, erase=True)
        assert not result.ok
        assert result.metadata["error_class"] == "RangeOccupied"
        assert dump_slot(0, options).metadata["data"] == first

    def test_put_with_erase_replaces_file(self, options, safety):
        put_file(_dol(size=3000), safety, slot=1, options=options)
        replacement = _dol(size=500)
        result = put_file(replacement, safety, slot=1, options=options, erase=True)
        assert result.ok, result.errors
        assert result.metadata["header"]["size"] == 500
        assert dump_slot(1, options).metadata["data"] == replacement

    def test_remove_missing_slot(self, options, safety):
        result = remove_slot(5, safety, options)
        assert not result.ok
        assert result.metadata["error_class"] == "NoSuchFile"
        assert result.metadata["warning_code"] == "W_NO_SUCH_FILE"
