"""Shared fixtures: small protocol tables and a simulated chip."""

from dataclasses import replace

import pytest

from qoob_flasher.protocol.tables import FlashGeometry, FrameLayout, get_table
from qoob_flasher.session import QoobSession
from qoob_flasher.simulator import SimulatedQoob


def make_table(checksum: str = "none", checksum_width: int = 0, **geometry):
    """Qoob table shrunk to 256-byte pages and 1 KiB sectors."""
    layout = dict(page_size=256, sector_size=1024, sector_count=8)
    layout.update(geometry)
    return replace(
        get_table(),
        name="test-small",
        geometry=FlashGeometry(**layout),
        frame=replace(FrameLayout(), checksum=checksum, checksum_width=checksum_width),
        timeout=1.0,
        poll_interval=0.0,
    )


@pytest.fixture
def table():
    return make_table()


@pytest.fixture
def crc_table():
    return make_table(checksum="crc16-xmodem", checksum_width=2)


def open_session(sim: SimulatedQoob) -> QoobSession:
    sim.open()
    session = QoobSession(sim, sim.candidate, sim.table)
    session.identify()
    return session


@pytest.fixture
def sim(table):
    return SimulatedQoob(table)


@pytest.fixture
def session(sim):
    session = open_session(sim)
    yield session
    session.close()


@pytest.fixture
def crc_sim(crc_table):
    return SimulatedQoob(crc_table)


@pytest.fixture
def crc_session(crc_sim):
    session = open_session(crc_sim)
    yield session
    session.close()
