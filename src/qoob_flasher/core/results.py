"""
Result objects for core operations.

Provides a unified result structure the CLI (or any other front end) can use
to display operation outcomes consistently.
"""

from dataclasses import dataclass, field
from typing import List, Dict, Any


@dataclass
class OperationResult:
    """
    Unified result object for all core operations.

    Attributes:
        ok: Whether the operation completed successfully
        operation: Name of the operation (e.g., "write_image", "erase_sectors")
        device: Identified device description
        region: Target region description (e.g., "0x000000-0x010000")
        bytes_len: Number of bytes processed
        hashes: Dict of hash values (sha256 of data read or written)
        warnings: Non-blocking issues encountered
        errors: Blocking errors that caused failure
        metadata: Additional operation-specific data; failures carry
                  error_class, stage, address, expected, actual, last_good
        logs: Captured log lines from the operation
    """
    ok: bool
    operation: str
    device: str = ""
    region: str = ""
    bytes_len: int = 0
    hashes: Dict[str, str] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    logs: List[str] = field(default_factory=list)

    def add_warning(self, message: str) -> None:
        """Add a warning message."""
        self.warnings.append(message)

    def add_error(self, message: str) -> None:
        """Add an error message and mark result as failed."""
        self.errors.append(message)
        self.ok = False

    def add_log(self, message: str) -> None:
        """Add a log line to the result."""
        self.logs.append(message)

    def to_summary(self) -> str:
        """
        Generate a human-readable summary string.

        Suitable for CLI output or simple logging.
        """
        status = "SUCCESS" if self.ok else "FAILED"
        lines = [f"[{status}] {self.operation}"]

        if self.device:
            lines.append(f"  Device: {self.device}")
        if self.region:
            lines.append(f"  Region: {self.region}")
        if self.bytes_len:
            lines.append(f"  Bytes: {self.bytes_len:,}")

        if self.hashes:
            for name, value in self.hashes.items():
                lines.append(f"  {name}: {value[:16]}...")

        if not self.ok:
            stage = self.metadata.get("stage")
            address = self.metadata.get("address")
            last_good = self.metadata.get("last_good")
            if stage:
                lines.append(f"  Stage: {stage}")
            if address is not None:
                lines.append(f"  Address: 0x{address:06X}")
            if last_good is not None:
                lines.append(f"  Last good: 0x{last_good:06X}")

        if self.warnings:
            lines.append("  Warnings:")
            for warn in self.warnings:
                lines.append(f"    - {warn}")

        if self.errors:
            lines.append("  Errors:")
            for err in self.errors:
                lines.append(f"    - {err}")

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        metadata = {
            key: value.hex() if isinstance(value, (bytes, bytearray)) else value
            for key, value in self.metadata.items()
        }
        return {
            "ok": self.ok,
            "operation": self.operation,
            "device": self.device,
            "region": self.region,
            "bytes_len": self.bytes_len,
            "hashes": self.hashes,
            "warnings": self.warnings,
            "errors": self.errors,
            "metadata": metadata,
            "logs": self.logs,
        }

    @classmethod
    def success(
        cls,
        operation: str,
        device: str = "",
        region: str = "",
        bytes_len: int = 0,
        **kwargs,
    ) -> "OperationResult":
        """Create a successful result."""
        return cls(
            ok=True,
            operation=operation,
            device=device,
            region=region,
            bytes_len=bytes_len,
            **kwargs,
        )

    @classmethod
    def failure(
        cls,
        operation: str,
        error: str,
        device: str = "",
        **kwargs,
    ) -> "OperationResult":
        """Create a failed result."""
        result = cls(
            ok=False,
            operation=operation,
            device=device,
            **kwargs,
        )
        result.errors.append(error)
        return result
