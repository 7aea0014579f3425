"""
Error taxonomy for the miner.

Every failure the loop can see is mapped onto one of these classes so the
orchestrator can decide between retrying, catching up, skipping the round,
or stopping.
"""

from typing import Optional


class MinerError(Exception):
    """Base class for all miner errors."""


class TransientNetworkError(MinerError):
    """RPC timeout, dropped connection, stale blockhash. Safe to retry."""


class CheckpointRequired(MinerError):
    """The program refused a deployment because the checkpoint is behind."""


class AlreadySatisfied(MinerError):
    """The requested effect already happened (e.g. already deployed this round)."""


class BaselineAlreadySet(AlreadySatisfied):
    """The baseline is set-once; only the reset flow may change it."""


class InsufficientFunds(MinerError):
    """Wallet or escrow cannot cover the requested write."""


class OracleUnavailable(MinerError):
    """No usable market price. Callers treat this as a pessimistic input."""


class ExternalRejection(MinerError):
    """The program rejected the transaction for a reason we do not handle."""

    def __init__(self, message: str, logs: Optional[list] = None):
        super().__init__(message)
        self.logs = list(logs or [])

    def __str__(self) -> str:
        base = super().__str__()
        if not self.logs:
            return base
        return f"{base} | logs: {' / '.join(str(line) for line in self.logs[-5:])}"


class OperatorShutdown(MinerError):
    """Stop was requested by the operator."""


class ConfigurationError(MinerError):
    """Unrecoverable startup configuration problem."""


_CHECKPOINT_MARKERS = ("not checkpointed", "checkpoint required")
_ALREADY_MARKERS = ("already", "duplicate")
_FUNDS_MARKERS = ("insufficient", "insufficient funds", "insufficient lamports")
_TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "connection",
    "blockhash not found",
    "block height exceeded",
    "429",
    "too many requests",
    "503",
    "service unavailable",
)


def classify_chain_error(error: Exception) -> MinerError:
    """
    Map a raw adapter exception onto the taxonomy.

    Already-classified errors pass through. Unknown errors become
    ExternalRejection with whatever program logs the adapter attached.
    """
    if isinstance(error, MinerError):
        return error

    message = str(error)
    lowered = message.lower()
    logs = getattr(error, "logs", None)

    if isinstance(error, (TimeoutError, ConnectionError)):
        return TransientNetworkError(message or type(error).__name__)
    if any(marker in lowered for marker in _CHECKPOINT_MARKERS):
        return CheckpointRequired(message)
    if any(marker in lowered for marker in _ALREADY_MARKERS):
        return AlreadySatisfied(message)
    # Bare "checkpoint" mentions only count once "already checkpointed" is ruled out
    if "checkpoint" in lowered:
        return CheckpointRequired(message)
    if any(marker in lowered for marker in _FUNDS_MARKERS):
        return InsufficientFunds(message)
    if any(marker in lowered for marker in _TRANSIENT_MARKERS):
        return TransientNetworkError(message)
    return ExternalRejection(message or type(error).__name__, logs=logs)
