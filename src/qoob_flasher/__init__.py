"""
Qoob Flasher - USB flasher for the Qoob Pro GameCube modchip

Erase, program, read back and verify the chip's flash, and manage the
files the Qoob BIOS keeps in it.
"""

__version__ = "0.1.0"

from qoob_flasher.session import QoobSession, connect
from qoob_flasher.programmer import FlashImage, FlashProgrammer
from qoob_flasher.flash_fs import QoobFs

__all__ = [
    "QoobSession",
    "connect",
    "FlashImage",
    "FlashProgrammer",
    "QoobFs",
    "__version__",
]
