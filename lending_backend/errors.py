"""
Error taxonomy for the lending client.

Callers branch on the exception type; each carries enough structure (codes,
addresses) to render a precise message without parsing strings.
"""
from __future__ import annotations

import re
from contextlib import contextmanager
from typing import Any, Iterator, List, Optional

from solana.exceptions import SolanaRpcException

# Anchor assigns custom program errors from 6000 in declaration order.
PROGRAM_ERROR_NAMES = {
    6000: "InsufficientFunds",
    6001: "OverBorrowableAmount",
    6002: "OverRepay",
    6003: "AccountNotUnhealthy",
}
PROGRAM_ERROR_MESSAGES = {
    6000: "User has not deposited enough tokens to withdraw",
    6001: "Requested amount to borrow is greater than the borrowable amount",
    6002: "User has not borrowed enough tokens to repay",
    6003: "User's account is not unhealthy",
}
# SystemError::AccountAlreadyInUse, surfaced when an `init` account already exists.
ACCOUNT_ALREADY_IN_USE = 0

_CUSTOM_CODE_RE = re.compile(r"Custom[^0-9]{0,16}(\d+)")
_INSTRUCTION_INDEX_RE = re.compile(r"InstructionError[^0-9]{0,16}(\d+)")


class LendingClientError(Exception):
    """Base class for every error raised by this package."""


class TransportError(LendingClientError):
    """RPC unreachable or timed out; safe for the caller to retry."""


class AccountNotFoundError(LendingClientError):
    def __init__(self, address: Any, kind: str = "account"):
        super().__init__(f"{kind} {address} does not exist")
        self.address = address
        self.kind = kind


class InstructionRejectedError(LendingClientError):
    def __init__(
        self,
        code: Optional[int],
        instruction_index: Optional[int] = None,
        logs: Optional[List[str]] = None,
        raw: Any = None,
    ):
        self.code = code
        self.instruction_index = instruction_index
        self.logs = list(logs or [])
        self.raw = raw
        self.name = program_error_name(code)
        super().__init__(f"instruction {instruction_index} rejected: {self.name} (code={code})")

    @property
    def already_in_use(self) -> bool:
        return self.code == ACCOUNT_ALREADY_IN_USE


class TransactionExpiredError(LendingClientError):
    def __init__(self, signature: Any = None, attempts: int = 1):
        super().__init__(f"transaction {signature} expired before confirmation after {attempts} attempt(s)")
        self.signature = signature
        self.attempts = attempts


class AddressMismatchError(LendingClientError):
    def __init__(self, label: str, expected: Any, actual: Any):
        super().__init__(f"{label} mismatch: expected {expected}, derived {actual}")
        self.label = label
        self.expected = expected
        self.actual = actual


class ConfigNotLoadedError(LendingClientError):
    """Operation attempted before the banks config exists or covers the requested mint."""


class InvalidSeedError(LendingClientError, ValueError):
    """Seed list violates the runtime limits for program derived addresses."""


def program_error_name(code: Optional[int]) -> str:
    if code is None:
        return "Unknown"
    if code in PROGRAM_ERROR_NAMES:
        return PROGRAM_ERROR_NAMES[code]
    if code == ACCOUNT_ALREADY_IN_USE:
        return "AccountAlreadyInUse"
    return f"Custom({code})"


def parse_instruction_error(err: Any) -> tuple[Optional[int], Optional[int]]:
    """
    Extract (instruction_index, custom_code) from a transaction error.

    Accepts the RPC JSON shape ``{"InstructionError": [0, {"Custom": 6001}]}`` as
    well as solders error objects, whose text form carries the same fields.
    """
    if err is None:
        return None, None
    if isinstance(err, dict) and "InstructionError" in err:
        index, detail = err["InstructionError"]
        code = detail.get("Custom") if isinstance(detail, dict) else None
        return index, code
    text = str(err)
    code_match = _CUSTOM_CODE_RE.search(text)
    index_match = _INSTRUCTION_INDEX_RE.search(text)
    return (
        int(index_match.group(1)) if index_match else None,
        int(code_match.group(1)) if code_match else None,
    )


@contextmanager
def transport_errors(operation: str) -> Iterator[None]:
    """Re-raise RPC transport failures from solana-py as TransportError."""
    try:
        yield
    except (SolanaRpcException, ConnectionError, TimeoutError) as exc:
        raise TransportError(f"{operation} failed: {exc}") from exc
