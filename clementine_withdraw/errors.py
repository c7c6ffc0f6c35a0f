"""
Error kinds raised by the withdrawal flow.

Every failure carries a kind and structured context so callers branch on
`error.kind` instead of parsing messages. "Input already spent" is not in
this list: the negotiator reports it as a successful completion.
"""

from enum import Enum
from typing import Any, Optional


class ErrorKind(Enum):
    EXTERNAL = "external"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    INVALID_CHECKPOINT = "invalid_checkpoint"
    NEGOTIATION_EXHAUSTED = "negotiation_exhausted"


class WithdrawalError(Exception):
    """Base class for all withdrawal failures"""
    kind: ErrorKind = ErrorKind.EXTERNAL

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{k}={v}" for k, v in self.context.items() if v is not None)
        return f"{self.message} ({details})" if details else self.message


class ExternalCallError(WithdrawalError):
    """A chain RPC or operator call failed; safe to retry"""
    kind = ErrorKind.EXTERNAL

    def __init__(self, operation: str, message: str, **context: Any):
        super().__init__(f"{operation} failed: {message}", operation=operation, **context)
        self.operation = operation
        self.cause = message


class BitcoinRPCError(ExternalCallError):
    """JSON-RPC error object returned by bitcoind"""

    def __init__(self, method: str, message: str, code: Optional[int] = None):
        super().__init__(f"bitcoin rpc {method}", message, code=code)
        self.method = method
        self.code = code


class InsufficientFundsError(WithdrawalError):
    """Wallet or Citrea balance cannot cover the next step"""
    kind = ErrorKind.INSUFFICIENT_FUNDS

    def __init__(self, chain: str, balance: Any = None, required: Any = None, message: str = ""):
        super().__init__(message or f"Insufficient funds on {chain}",
                         chain=chain, balance=balance, required=required)
        self.chain = chain
        self.balance = balance
        self.required = required


class InvalidCheckpointError(WithdrawalError):
    """Checkpoint or parameters are missing or malformed; raised before any external call"""
    kind = ErrorKind.INVALID_CHECKPOINT

    def __init__(self, message: str, field: Optional[str] = None, reason: Optional[str] = None):
        super().__init__(message, field=field, reason=reason)
        self.field = field
        self.reason = reason


class CheckpointLockedError(InvalidCheckpointError):
    """Another process holds the checkpoint"""

    def __init__(self, path: str):
        super().__init__(f"Checkpoint {path} is in use by another withdrawal process",
                         field="checkpoint", reason="locked")
        self.path = path


class NegotiationExhaustedError(WithdrawalError):
    """No operator accepted any candidate amount; the record is unchanged"""
    kind = ErrorKind.NEGOTIATION_EXHAUSTED

    def __init__(self, attempts: int, floor: Any):
        super().__init__("No operator accepted any withdrawal amount",
                         attempts=attempts, floor=floor)
        self.attempts = attempts
        self.floor = floor
