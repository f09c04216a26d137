from collections.abc import Iterable, Sequence

from airdrop.errors import InvalidCapacity
from airdrop.models import Recipient, TransactionBatch, TransferInstruction


def build_instructions(recipients: Iterable[Recipient], amount: int) -> list[TransferInstruction]:
    """One transfer of ``amount`` drops to each recipient's owner, in input order."""
    return [TransferInstruction(recipient_address=r.owner, amount=amount) for r in recipients]


def batch(instructions: Sequence[TransferInstruction], capacity: int) -> list[TransactionBatch]:
    """Partition ``instructions`` into ceil(N / capacity) batches, preserving order.

    Raises:
        InvalidCapacity: If capacity is not an integer >= 1.
    """
    if isinstance(capacity, bool) or not isinstance(capacity, int) or capacity < 1:
        raise InvalidCapacity(capacity)

    return [
        TransactionBatch(index=i, instructions=tuple(instructions[lo:lo + capacity]))
        for i, lo in enumerate(range(0, len(instructions), capacity))
    ]
