import time
from dataclasses import dataclass, field

from airdrop.constants import CommitmentLevel, SubmissionState


@dataclass(frozen=True)
class Recipient:
    owner: str
    address: str


@dataclass(frozen=True)
class TransferInstruction:
    recipient_address: str
    amount: int  # drops

    def __post_init__(self):
        if self.amount < 0:
            raise ValueError(f"Transfer amount must be non-negative, got {self.amount}")


@dataclass(frozen=True)
class TransactionBatch:
    index: int
    instructions: tuple[TransferInstruction, ...]

    def __len__(self) -> int:
        return len(self.instructions)

    @property
    def total_amount(self) -> int:
        return sum(i.amount for i in self.instructions)


@dataclass(frozen=True)
class FreshnessToken:
    """Validity window for one submission attempt.

    sequence: next account Sequence of the payer.
    last_ledger_sequence: the transaction is dead once a validated ledger passes this index.
    ledger_index: validated ledger the window was computed from.
    """

    sequence: int
    last_ledger_sequence: int
    ledger_index: int


@dataclass(frozen=True)
class SubmissionAttempt:
    batch: TransactionBatch
    attempt_number: int
    token: FreshnessToken

    @property
    def expiry_bound(self) -> int:
        return self.token.last_ledger_sequence


@dataclass(frozen=True)
class TxStatus:
    confirmation_level: CommitmentLevel | None = None
    engine_result: str | None = None


@dataclass(frozen=True)
class Fulfilled:
    reference_id: str
    ok = True


@dataclass(frozen=True)
class Rejected:
    cause: BaseException
    ok = False


SubmissionOutcome = Fulfilled | Rejected


@dataclass(slots=True)
class BatchProgress:
    index: int
    size: int
    state: SubmissionState = SubmissionState.PENDING
    attempts: int = 0
    reference_ids: list[str] = field(default_factory=list)
    unknown_reconciliations: int = 0
    last_error: str | None = None
    created_at: float = field(default_factory=time.time)
    finalized_at: float | None = None

    def __str__(self):
        return f"batch {self.index + 1} -- {self.size} transfers -- {self.state}"

    def add_reference_id(self, reference_id: str) -> None:
        if reference_id not in self.reference_ids:
            self.reference_ids.append(reference_id)

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "size": self.size,
            "state": str(self.state),
            "attempts": self.attempts,
            "reference_ids": list(self.reference_ids),
            "unknown_reconciliations": self.unknown_reconciliations,
            "last_error": self.last_error,
            "created_at": self.created_at,
            "finalized_at": self.finalized_at,
        }


@dataclass(frozen=True)
class FeeInfo:
    """Open-ledger cost snapshot from the ``fee`` command, in drops."""

    base_fee: int
    minimum_fee: int
    open_ledger_fee: int
    queue_size: int
    max_queue_size: int
    ledger_current_index: int

    @classmethod
    def from_result(cls, result: dict) -> "FeeInfo":
        drops = {k: int(v) for k, v in result["drops"].items() if k.endswith("_fee")}
        return cls(
            base_fee=drops["base_fee"],
            minimum_fee=drops["minimum_fee"],
            open_ledger_fee=drops["open_ledger_fee"],
            queue_size=int(result["current_queue_size"]),
            max_queue_size=int(result["max_queue_size"]),
            ledger_current_index=int(result["ledger_current_index"]),
        )

    @property
    def escalated(self) -> bool:
        """True once the queue pushes the cost of getting in above the base fee."""
        return self.minimum_fee > self.base_fee
