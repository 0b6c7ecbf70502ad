"""Tests for device enumeration, identification, the HID transport and sessions."""

from dataclasses import replace
from unittest.mock import MagicMock, patch

import pytest

from qoob_flasher.errors import (
    DeviceBusy,
    DeviceNotFound,
    MultipleDevices,
    PartialTransfer,
    PermissionDenied,
    ProtocolMismatch,
    Timeout,
    TransportError,
    UnsupportedDevice,
)
from qoob_flasher.protocol import discovery, transport
from qoob_flasher.protocol.discovery import (
    DeviceCandidate,
    check_candidate,
    enumerate_devices,
    identify,
)
from qoob_flasher.protocol.tables import get_table
from qoob_flasher.protocol.transport import HidTransport, open_transport
from qoob_flasher.session import QoobSession, connect


def _hid_info(path=b"/dev/hidraw3", vid=0x03EB, pid=0x0001, release=0x0100):
    return {
        "path": path,
        "vendor_id": vid,
        "product_id": pid,
        "manufacturer_string": "QooB Team",
        "product_string": "QOOB Chip Pro",
        "serial_number": "",
        "release_number": release,
    }


class TestEnumerate:
    """Enumeration reads the host device list only."""

    def test_filters_by_ids(self):
        infos = [_hid_info(), _hid_info(path=b"/dev/hidraw9", vid=0x046D, pid=0xC52B)]
        with patch.object(discovery.hid, "enumerate", return_value=infos) as mock_enum:
            candidates = enumerate_devices()

        mock_enum.assert_called_once_with(0x03EB, 0x0001)
        assert len(candidates) == 1
        assert candidates[0].path == b"/dev/hidraw3"
        assert candidates[0].product == "QOOB Chip Pro"
        assert candidates[0].release == 0x0100

    def test_missing_strings_become_empty(self):
        info = _hid_info()
        info["manufacturer_string"] = None
        with patch.object(discovery.hid, "enumerate", return_value=[info]):
            (candidate,) = enumerate_devices()
        assert candidate.manufacturer == ""


class TestCheckCandidate:
    """Known-good set enforcement."""

    def _candidate(self, **overrides):
        return replace(DeviceCandidate.from_hid(_hid_info()), **overrides)

    def test_accepts_qoob_pro(self):
        check_candidate(self._candidate(), get_table())

    def test_rejects_other_ids(self):
        with pytest.raises(UnsupportedDevice):
            check_candidate(self._candidate(product_id=0x0002), get_table())

    def test_rejects_other_product_string(self):
        with pytest.raises(UnsupportedDevice):
            check_candidate(self._candidate(product="QOOB Chip SX"), get_table())

    def test_rejects_unlisted_release(self):
        table = get_table()
        table = replace(table, usb=replace(table.usb, releases=frozenset({0x0100})))
        check_candidate(self._candidate(release=0x0100), table)
        with pytest.raises(UnsupportedDevice, match="protocol version"):
            check_candidate(self._candidate(release=0x0200), table)


class TestIdentify:
    """Identification handshake over a transport."""

    def test_identify_simulated(self, sim, table):
        sim.open()
        info = identify(sim, sim.candidate, table)
        assert info.total_size == 8 * 1024
        assert info.page_size == 256
        assert info.sector_size == 1024
        assert info.erase_value == 0xFF
        assert info.version == 0x0100
        assert info.table == "test-small"
        assert info.to_dict()["path"] == "sim:qoob"

    def test_bad_checksum_is_protocol_mismatch(self, crc_sim, crc_table):
        crc_sim.open()
        crc_sim.add_fault("checksum", lambda rec: rec.op == "status")
        with pytest.raises(ProtocolMismatch):
            identify(crc_sim, crc_sim.candidate, crc_table)

    def test_short_response_is_protocol_mismatch(self, sim, table):
        sim.open()
        sim.add_fault("short", lambda rec: rec.op == "status")
        with pytest.raises(ProtocolMismatch):
            identify(sim, sim.candidate, table)

    def test_silent_device_times_out(self, sim, table):
        sim.open()
        sim.add_fault("drop", lambda rec: rec.op == "status")
        with pytest.raises(Timeout):
            identify(sim, sim.candidate, table)

    def test_wrong_strings_rejected_before_any_traffic(self, sim, table):
        sim.open()
        candidate = replace(sim.candidate, manufacturer="Someone Else")
        with pytest.raises(UnsupportedDevice):
            identify(sim, candidate, table)
        assert sim.commands == []


class TestHidTransport:
    """Transport error classification with a mocked hidapi device."""

    def _open(self, dev):
        with patch.object(transport.hid, "device", return_value=dev):
            t = HidTransport(b"/dev/hidraw3", timeout=0.05)
            t.open()
        return t

    def test_send_and_receive(self):
        dev = MagicMock()
        dev.write.return_value = 65
        dev.get_feature_report.return_value = [0] * 65
        t = self._open(dev)

        t.send(bytes(65))
        assert t.receive(65) == bytes(65)
        dev.get_feature_report.assert_called_with(0, 65)

    def test_short_write_is_partial_transfer(self):
        dev = MagicMock()
        dev.write.return_value = 10
        t = self._open(dev)
        with pytest.raises(PartialTransfer) as excinfo:
            t.send(bytes(65))
        assert excinfo.value.transferred == 10
        assert excinfo.value.requested == 65

    def test_write_error(self):
        dev = MagicMock()
        dev.write.side_effect = OSError("pipe")
        t = self._open(dev)
        with pytest.raises(TransportError):
            t.send(bytes(65))

    def test_no_report_times_out(self):
        dev = MagicMock()
        dev.get_feature_report.return_value = []
        t = self._open(dev)
        with pytest.raises(Timeout):
            t.receive(65)

    def test_short_report_is_partial_transfer(self):
        dev = MagicMock()
        dev.get_feature_report.return_value = [0] * 10
        t = self._open(dev)
        with pytest.raises(PartialTransfer):
            t.receive(65)

    def test_closed_transport_refuses_io(self):
        t = HidTransport(b"/dev/hidraw3")
        with pytest.raises(TransportError):
            t.send(bytes(65))

    def test_close_is_idempotent(self):
        dev = MagicMock()
        t = self._open(dev)
        t.close()
        t.close()
        dev.close.assert_called_once()
        assert not t.is_open

    def test_open_failure_without_access_is_permission_denied(self):
        dev = MagicMock()
        dev.open_path.side_effect = OSError("open failed")
        with patch.object(transport.hid, "device", return_value=dev), \
                patch.object(transport.os.path, "exists", return_value=True), \
                patch.object(transport.os, "access", return_value=False):
            with pytest.raises(PermissionDenied, match="udev"):
                HidTransport(b"/dev/hidraw3").open()

    def test_open_failure_otherwise_is_busy(self):
        dev = MagicMock()
        dev.open_path.side_effect = OSError("open failed")
        with patch.object(transport.hid, "device", return_value=dev), \
                patch.object(transport.os.path, "exists", return_value=False):
            with pytest.raises(DeviceBusy):
                HidTransport(b"/dev/hidraw3").open()

    def test_open_transport_not_found(self):
        with patch.object(transport.hid, "enumerate", return_value=[]):
            with pytest.raises(DeviceNotFound):
                open_transport(0x03EB, 0x0001)

    def test_open_transport_multiple(self):
        infos = [_hid_info(), _hid_info(path=b"/dev/hidraw4")]
        with patch.object(transport.hid, "enumerate", return_value=infos):
            with pytest.raises(MultipleDevices):
                open_transport(0x03EB, 0x0001)


class TestSession:
    """Session ownership and connect()."""

    def test_connect_simulated(self):
        with connect(simulate=True) as session:
            assert session.info.product == "QOOB Chip Pro"
            assert session.info.sector_count == 32
        assert session.closed

    def test_identify_cached(self, sim, table):
        sim.open()
        session = QoobSession(sim, sim.candidate, table)
        first = session.identify()
        assert session.identify() is first
        assert sim.count("status") == 1

    def test_close_idempotent(self, sim, table):
        sim.open()
        session = QoobSession(sim, sim.candidate, table)
        session.close()
        session.close()
        assert not sim.is_open

    def test_reset_closes_session(self, session, sim):
        session.reset()
        assert sim.was_reset
        assert session.closed

    def test_connect_no_device(self):
        with patch.object(discovery.hid, "enumerate", return_value=[]):
            with pytest.raises(DeviceNotFound):
                connect()

    def test_connect_multiple_devices(self):
        infos = [_hid_info(), _hid_info(path=b"/dev/hidraw4")]
        with patch.object(discovery.hid, "enumerate", return_value=infos):
            with pytest.raises(MultipleDevices):
                connect()

    def test_connect_picks_path(self):
        infos = [_hid_info(), _hid_info(path=b"/dev/hidraw4")]
        fake = MagicMock()
        with patch.object(discovery.hid, "enumerate", return_value=infos), \
                patch("qoob_flasher.session.open_transport", return_value=fake) as mock_open, \
                patch("qoob_flasher.session.identify") as mock_identify:
            session = connect(path="/dev/hidraw4")
        assert mock_open.call_args.kwargs["path"] == b"/dev/hidraw4"
        assert session.candidate.path == b"/dev/hidraw4"
        mock_identify.assert_called_once()

    def test_connect_closes_on_identify_failure(self):
        fake = MagicMock()
        with patch.object(discovery.hid, "enumerate", return_value=[_hid_info()]), \
                patch("qoob_flasher.session.open_transport", return_value=fake), \
                patch("qoob_flasher.session.identify", side_effect=ProtocolMismatch("bad")):
            with pytest.raises(ProtocolMismatch):
                connect()
        fake.close.assert_called_once()

    def test_sim_image_persists(self, tmp_path):
        image = tmp_path / "flash.bin"
        with connect(simulate=True, sim_image=image) as session:
            sim = session.transport
            sim.flash[0:4] = b"GC!!"
        assert image.read_bytes()[:4] == b"GC!!"
        with connect(simulate=True, sim_image=image) as session:
            assert bytes(session.transport.flash[0:4]) == b"GC!!"
