"""
Safety context and write gating for flash-modifying operations.

Centralizes confirmation rules so every front end enforces the same checks
before erasing or programming a chip.
"""

import sys
from dataclasses import dataclass, field
from typing import Optional, List, Callable

# Confirmation token required for non-interactive writes
CONFIRMATION_TOKEN = "WRITE"


class WritePermissionError(Exception):
    """
    Raised when a write operation is not permitted.

    Attributes:
        reason: Human-readable explanation of why write was denied
        details: Additional context (region, size, etc.)
    """
    def __init__(self, reason: str, details: Optional[dict] = None):
        self.reason = reason
        self.details = details or {}
        super().__init__(reason)


@dataclass
class SafetyContext:
    """
    Safety context for write operations.

    Attributes:
        write_enabled: Whether the --write flag was provided
        confirmation_token: For non-interactive mode, must match CONFIRMATION_TOKEN
        interactive: Whether the front end can prompt for confirmation
        simulate: Whether the target is the simulated chip
        confirmed: Set once permission has been granted; later checks pass
        warnings: Warning messages accumulated during the operation
    """
    write_enabled: bool = False
    confirmation_token: Optional[str] = None
    interactive: bool = True
    simulate: bool = False
    confirmed: bool = False
    warnings: List[str] = field(default_factory=list)

    # The CLI sets these to prompt functions
    prompt_confirmation: Optional[Callable[[str], str]] = None
    show_details: Optional[Callable[[dict], None]] = None

    def add_warning(self, message: str) -> None:
        """Add a warning to the context."""
        self.warnings.append(message)

    def to_details_dict(
        self,
        operation: str,
        target_region: str = "",
        bytes_length: int = 0,
    ) -> dict:
        """Create a details dictionary for display."""
        details = {
            "operation": operation,
            "target_region": target_region,
            "bytes_length": bytes_length,
        }
        if self.warnings:
            details["warnings"] = self.warnings
        return details


def require_write_permission(
    ctx: SafetyContext,
    operation: str,
    target_region: str = "",
    bytes_length: int = 0,
) -> None:
    """
    Enforce write permission rules.

    Rules enforced:
    1. Simulation mode or already confirmed: allowed
    2. Write not enabled: denied with instructions
    3. Confirmation token present: must match exactly
    4. Interactive: prompt user for confirmation
    5. Otherwise denied

    Raises:
        WritePermissionError: If write is not permitted
    """
    details = ctx.to_details_dict(operation, target_region, bytes_length)

    if ctx.simulate or ctx.confirmed:
        return

    if not ctx.write_enabled:
        raise WritePermissionError(
            f"{operation} modifies flash and requires explicit permission. "
            "Use the --write flag.",
            details=details,
        )

    if ctx.confirmation_token is not None:
        if ctx.confirmation_token.strip().upper() != CONFIRMATION_TOKEN:
            raise WritePermissionError(
                f"Confirmation token mismatch. Expected '{CONFIRMATION_TOKEN}'.",
                details=details,
            )
        ctx.confirmed = True
        return

    if ctx.interactive:
        if ctx.show_details:
            ctx.show_details(details)

        if ctx.prompt_confirmation:
            user_input = ctx.prompt_confirmation(
                f"Type '{CONFIRMATION_TOKEN}' to proceed, or anything else to abort"
            )
            if user_input.strip().upper() != CONFIRMATION_TOKEN:
                raise WritePermissionError(
                    "Confirmation failed. Operation aborted by user.",
                    details=details,
                )
            ctx.confirmed = True
            return
        raise WritePermissionError(
            "Interactive confirmation required but no prompt handler set. "
            "Provide a confirmation token for non-interactive mode.",
            details=details,
        )

    raise WritePermissionError(
        f"Non-interactive mode requires --confirm {CONFIRMATION_TOKEN}.",
        details=details,
    )


def create_cli_safety_context(
    write_flag: bool,
    simulate: bool = False,
    confirmation_token: Optional[str] = None,
) -> SafetyContext:
    """
    Create a SafetyContext configured for CLI usage.

    Interactive only when stdin is a TTY and no token was given.
    """
    interactive = sys.stdin.isatty() and confirmation_token is None

    return SafetyContext(
        write_enabled=write_flag,
        confirmation_token=confirmation_token,
        interactive=interactive,
        simulate=simulate,
    )
