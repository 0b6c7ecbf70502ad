"""
One command/response exchange with the device.

Each exchange is a small state machine:

    IDLE -> SENT -> AWAITING_RESPONSE -> DECODED
                                      -> TIMED_OUT
                                      -> CHECKSUM_INVALID
                                      -> FAILED

The exchange sends the frames for one operation, then waits for the
response the operation calls for (data reports, a single status report, or
status polling until the device settles). It never retries; a failed
exchange is finished and the caller decides whether to start a new one.
"""

import logging
import time
from enum import Enum
from typing import Optional, Protocol, Union

from qoob_flasher.errors import (
    BusBusy,
    ChecksumInvalid,
    Timeout,
)
from qoob_flasher.protocol.codec import (
    Bus,
    Erase,
    Operation,
    QoobCodec,
    Read,
    Reset,
    Status,
    StatusReport,
    Write,
)

logger = logging.getLogger(__name__)


class ReportTransport(Protocol):
    """What an exchange needs from a transport."""

    def send(self, data: bytes) -> None:
        ...

    def receive(self, expected_len: int, timeout: Optional[float] = None) -> bytes:
        ...

    def close(self) -> None:
        ...


class ExchangeState(Enum):
    """Lifecycle of one exchange."""
    IDLE = "idle"
    SENT = "sent"
    AWAITING_RESPONSE = "awaiting_response"
    DECODED = "decoded"
    TIMED_OUT = "timed_out"
    CHECKSUM_INVALID = "checksum_invalid"
    FAILED = "failed"


TERMINAL_STATES = frozenset({
    ExchangeState.DECODED,
    ExchangeState.TIMED_OUT,
    ExchangeState.CHECKSUM_INVALID,
    ExchangeState.FAILED,
})


class Exchange:
    """
    Drive a single operation through send and response.

    Example:
        exchange = Exchange(transport, codec, Read(address=0, length=256))
        data = exchange.run()
        assert exchange.state is ExchangeState.DECODED
    """

    def __init__(
        self,
        transport: ReportTransport,
        codec: QoobCodec,
        operation: Operation,
        timeout: Optional[float] = None,
    ):
        self.transport = transport
        self.codec = codec
        self.operation = operation
        self.timeout = codec.table.timeout if timeout is None else timeout
        self.state = ExchangeState.IDLE
        self.result: Union[StatusReport, bytes, None] = None
        self.error: Optional[Exception] = None
        self.polls = 0

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def run(self) -> Union[StatusReport, bytes, None]:
        """
        Run the exchange to a terminal state.

        Returns:
            Data bytes for reads, the final StatusReport for everything
            else that answers, None for reset

        Raises:
            RuntimeError: If the exchange was already run
            Timeout, ChecksumInvalid, ProtocolMismatch, BusBusy,
            TransportError: Whatever ended the exchange
        """
        if self.state is not ExchangeState.IDLE:
            raise RuntimeError(f"Exchange already run (state {self.state.value})")

        deadline = time.monotonic() + self.timeout
        try:
            for frame in self.codec.encode(self.operation):
                self.transport.send(frame)
            self.state = ExchangeState.SENT

            self.state = ExchangeState.AWAITING_RESPONSE
            self.result = self._await_response(deadline)
        except Timeout as e:
            self._finish(ExchangeState.TIMED_OUT, e)
            raise
        except ChecksumInvalid as e:
            self._finish(ExchangeState.CHECKSUM_INVALID, e)
            raise
        except Exception as e:
            self._finish(ExchangeState.FAILED, e)
            raise

        self.state = ExchangeState.DECODED
        return self.result

    def _finish(self, state: ExchangeState, error: Exception) -> None:
        self.state = state
        self.error = error
        logger.debug(f"{self.operation!r} ended {state.value}: {error}")

    def _remaining(self, deadline: float) -> float:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise Timeout(f"No response to {type(self.operation).__name__} before deadline")
        return remaining

    def _status(self, deadline: float) -> StatusReport:
        """Ask for one status report."""
        self.polls += 1
        if self.polls > 1:
            # Status requests after the first are polls, not part of the command
            time.sleep(self.codec.table.poll_interval)
            self._remaining(deadline)
        self.transport.send(self.codec.command_frame(Status()))
        report = self.transport.receive(
            self.codec.layout.report_size, timeout=self._remaining(deadline)
        )
        return self.codec.decode_status(report)

    def _await_response(self, deadline: float) -> Union[StatusReport, bytes, None]:
        op = self.operation
        status_layout = self.codec.table.status

        if isinstance(op, Reset):
            return None

        if isinstance(op, Read):
            chunks = []
            for _ in range(self.codec.response_count(op)):
                report = self.transport.receive(
                    self.codec.layout.report_size, timeout=self._remaining(deadline)
                )
                chunks.append(self.codec.decode_data(report))
            return b"".join(chunks)[:op.length]

        if isinstance(op, Status):
            # The command frame already went out; only the answer is missing
            self.polls += 1
            report = self.transport.receive(
                self.codec.layout.report_size, timeout=self._remaining(deadline)
            )
            return self.codec.decode_status(report)

        if isinstance(op, (Erase, Write)):
            while True:
                status = self._status(deadline)
                if not status.busy:
                    return status

        if isinstance(op, Bus):
            while True:
                try:
                    status = self._status(deadline)
                except BusBusy:
                    if op.acquire:
                        raise
                    # Console took the bus straight after we let go
                    return None
                if op.acquire and status.bus == status_layout.bus_held:
                    return status
                if not op.acquire and status.bus == status_layout.bus_released:
                    return status

        raise TypeError(f"Unknown operation: {op!r}")


def run_exchange(
    transport: ReportTransport,
    codec: QoobCodec,
    operation: Operation,
    timeout: Optional[float] = None,
) -> Union[StatusReport, bytes, None]:
    """Run one exchange and return its decoded result."""
    return Exchange(transport, codec, operation, timeout).run()
