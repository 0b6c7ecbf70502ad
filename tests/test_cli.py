"""End-to-end CLI tests against the simulated chip."""

from contextlib import contextmanager
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from qoob_flasher import __version__
from qoob_flasher import cli
from qoob_flasher.cli import app
from qoob_flasher.protocol import discovery

runner = CliRunner()


def _dol(size: int = 1500) -> bytes:
    header = bytearray(256)
    header[0:4] = b"DOL\0"
    header[4:9] = b"Swiss"
    header[0xFC:0x100] = size.to_bytes(4, "big")
    return bytes(header) + b"\x5A" * (size - 256)


@pytest.fixture
def sim_args(tmp_path):
    return ["--sim-image", str(tmp_path / "flash.bin")]


@pytest.fixture
def image(tmp_path):
    path = tmp_path / "image.bin"
    path.write_bytes(bytes(range(256)) * 4)
    return path


class TestGlobalOptions:
    """Callback options and informational commands."""

    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_tables(self):
        result = runner.invoke(app, ["tables"])
        assert result.exit_code == 0
        assert "Protocol Tables" in result.output

    def test_unknown_table_rejected(self):
        result = runner.invoke(app, ["--table", "qoob-sx", "tables"])
        assert result.exit_code != 0

    def test_identify_json(self, sim_args):
        result = runner.invoke(app, sim_args + ["--json", "identify"])
        assert result.exit_code == 0
        assert '"ok": true' in result.output
        assert '"product": "QOOB Chip Pro"' in result.output

    def test_identify_without_device(self):
        with patch.object(discovery.hid, "enumerate", return_value=[]):
            result = runner.invoke(app, ["identify"])
        assert result.exit_code == 2

    def test_multiple_devices(self):
        info = {
            "vendor_id": 0x03EB,
            "product_id": 0x0001,
            "manufacturer_string": "QooB Team",
            "product_string": "QOOB Chip Pro",
            "serial_number": "",
            "release_number": 0x0100,
        }
        infos = [dict(info, path=b"/dev/hidraw1"), dict(info, path=b"/dev/hidraw2")]
        with patch.object(discovery.hid, "enumerate", return_value=infos):
            result = runner.invoke(app, ["identify"])
        assert result.exit_code == 2


class TestFlashCommands:
    """write / verify / read / erase."""

    def test_write_verify_read(self, sim_args, image, tmp_path):
        result = runner.invoke(app, sim_args + ["write", str(image)])
        assert result.exit_code == 0, result.output
        assert "Wrote 1,024 bytes" in result.output

        result = runner.invoke(app, sim_args + ["verify", str(image)])
        assert result.exit_code == 0, result.output

        out = tmp_path / "out.bin"
        result = runner.invoke(app, sim_args + ["read", str(out), "--length", "0x400"])
        assert result.exit_code == 0, result.output
        assert out.read_bytes() == image.read_bytes()

    def test_verify_mismatch_exit_code(self, sim_args, image, tmp_path):
        runner.invoke(app, sim_args + ["write", str(image)])
        other = tmp_path / "other.bin"
        other.write_bytes(b"\x00" * 1024)

        result = runner.invoke(app, sim_args + ["verify", str(other)])
        assert result.exit_code == 5
        assert "Expected:" in result.output

    def test_unaligned_address(self, sim_args, image):
        result = runner.invoke(app, sim_args + ["write", str(image), "--address", "0x10"])
        assert result.exit_code == 1

    def test_bad_address(self, sim_args, image):
        result = runner.invoke(app, sim_args + ["write", str(image), "--address", "zero"])
        assert result.exit_code == 2

    def test_missing_image(self, sim_args, tmp_path):
        result = runner.invoke(app, sim_args + ["write", str(tmp_path / "nope.bin")])
        assert result.exit_code == 1
        assert "File not found" in result.output

    def test_erase_range(self, sim_args, image, tmp_path):
        runner.invoke(app, sim_args + ["write", str(image)])
        result = runner.invoke(app, sim_args + ["erase", "0-1"])
        assert result.exit_code == 0, result.output

        out = tmp_path / "out.bin"
        runner.invoke(app, sim_args + ["read", str(out), "--length", "1K"])
        assert out.read_bytes() == b"\xFF" * 1024

    def test_erase_needs_selection(self, sim_args):
        result = runner.invoke(app, sim_args + ["erase"])
        assert result.exit_code != 0

    def test_write_refused_without_write_flag(self, image):
        with patch.object(discovery.hid, "enumerate") as mock_enum:
            result = runner.invoke(app, ["write", str(image)])
        assert result.exit_code == 1
        assert "--write" in result.output
        mock_enum.assert_not_called()

    def test_write_refused_with_wrong_token(self, image):
        result = runner.invoke(app, ["write", str(image), "--write", "--confirm", "YES"])
        assert result.exit_code == 1
        assert "mismatch" in result.output

    def test_refusal_happens_before_progress(self, image):
        with patch("qoob_flasher.cli.progress_sink") as mock_sink:
            result = runner.invoke(app, ["write", str(image)])
        assert result.exit_code == 1
        assert "W_WRITE_DISABLED" in result.output
        mock_sink.assert_not_called()

    def test_prompt_runs_before_progress_and_only_once(self, image):
        events = []
        real_sink = cli.progress_sink

        @contextmanager
        def recording_sink(enabled=True):
            events.append("progress")
            with real_sink(enabled) as sink:
                yield sink

        def answer(text):
            events.append("prompt")
            return "WRITE"

        with patch("qoob_flasher.core.safety.sys") as mock_sys, \
                patch("qoob_flasher.cli.progress_sink", recording_sink), \
                patch("qoob_flasher.cli.typer.prompt", side_effect=answer), \
                patch.object(discovery.hid, "enumerate", return_value=[]):
            mock_sys.stdin.isatty.return_value = True
            result = runner.invoke(app, ["write", str(image), "--write", "--erase"])
        assert events == ["prompt", "progress"]
        assert "erased first" in result.output
        # No chip attached; the prompt was the only gate
        assert result.exit_code == 2

    def test_declined_prompt_never_connects(self, image):
        with patch("qoob_flasher.core.safety.sys") as mock_sys, \
                patch("qoob_flasher.cli.typer.prompt", return_value="no"), \
                patch("qoob_flasher.cli.progress_sink") as mock_sink, \
                patch.object(discovery.hid, "enumerate") as mock_enum:
            mock_sys.stdin.isatty.return_value = True
            result = runner.invoke(app, ["erase", "0-1", "--write"])
        assert result.exit_code == 1
        assert "aborted" in result.output
        mock_sink.assert_not_called()
        mock_enum.assert_not_called()


class TestSlotCommands:
    """put / ls / dump-slot / rm."""

    def test_put_ls_dump_rm(self, sim_args, tmp_path):
        dol = tmp_path / "swiss.dol"
        dol.write_bytes(_dol())

        result = runner.invoke(app, sim_args + ["put", str(dol)])
        assert result.exit_code == 0, result.output
        assert "slot 0" in result.output

        result = runner.invoke(app, sim_args + ["--json", "ls"])
        assert result.exit_code == 0
        assert '"description": "Swiss"' in result.output

        result = runner.invoke(app, sim_args + ["ls"])
        assert "Sectors: #." in result.output

        out = tmp_path / "dumped.dol"
        result = runner.invoke(app, sim_args + ["dump-slot", "0", str(out)])
        assert result.exit_code == 0, result.output
        assert out.read_bytes() == dol.read_bytes()

        result = runner.invoke(app, sim_args + ["rm", "0"])
        assert result.exit_code == 0, result.output
        result = runner.invoke(app, sim_args + ["dump-slot", "0", str(out)])
        assert result.exit_code == 1

    def test_put_rejects_headerless_file(self, sim_args, image):
        result = runner.invoke(app, sim_args + ["put", str(image)])
        assert result.exit_code == 1
        assert "Qoob header" in result.output

    def test_reset(self, sim_args):
        result = runner.invoke(app, sim_args + ["reset"])
        assert result.exit_code == 0
