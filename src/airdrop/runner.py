import asyncio
import logging
import time
from collections.abc import Sequence

from xrpl.wallet import Wallet

from airdrop.batcher import batch, build_instructions
from airdrop.config import EngineConfig
from airdrop.constants import SubmissionState
from airdrop.errors import InvalidCapacity, RetriesExhausted
from airdrop.ledger import LedgerClient
from airdrop.models import BatchProgress, Recipient, Rejected, SubmissionOutcome, TransactionBatch
from airdrop.reconcile import Reconciler
from airdrop.retry import Sleep
from airdrop.submission import Submitter

log = logging.getLogger("airdrop.runner")


class BatchRunner:
    """Submits batches one after another from a single payer.

    Batch i+1 is not built into a transaction until batch i is terminal, so
    every attempt reads the payer's Sequence after the previous batch settled.
    """

    def __init__(
        self,
        client: LedgerClient,
        payer: Wallet,
        config: EngineConfig | None = None,
        *,
        sleep: Sleep = asyncio.sleep,
    ):
        self.client = client
        self.payer = payer
        self.config = config or EngineConfig()
        self.sleep = sleep
        self.submitter = Submitter(client, self.config, reconciler=Reconciler(client), sleep=sleep)
        self.progress: list[BatchProgress] = []

    async def run(
        self,
        batches: Sequence[TransactionBatch],
        payer: Wallet | None = None,
        max_retries: int | None = None,
    ) -> list[SubmissionOutcome]:
        """Drive every batch to a terminal outcome, in order.

        Never raises for a failed batch; the caller inspects each outcome.
        An unexpected error while driving one batch is recorded as that
        batch's rejection and the run moves on to the next batch.
        The inter-transaction delay separates consecutive batches and is not
        applied after the last one.

        Raises:
            InvalidCapacity: If any batch is larger than the ledger client accepts.
                Checked before anything is sent.
        """
        limit = getattr(self.client, "max_batch_size", None)
        if limit is not None:
            for b in batches:
                if len(b) > limit:
                    raise InvalidCapacity(len(b))

        payer = payer or self.payer
        self.progress = [BatchProgress(index=b.index, size=len(b)) for b in batches]
        outcomes: list[SubmissionOutcome] = []

        for i, (b, p) in enumerate(zip(batches, self.progress)):
            label = f"Transaction {i + 1}/{len(batches)}"
            try:
                outcome = await self.submitter.submit(b, payer, max_retries=max_retries, progress=p, label=label)
            except Exception as e:
                log.exception("%s aborted", label)
                p.state = SubmissionState.FAILED
                p.last_error = str(e)
                p.finalized_at = time.time()
                outcome = Rejected(cause=e)
            outcomes.append(outcome)

            if i < len(batches) - 1:
                await self.sleep(self.config.delay)

        return outcomes

    async def execute(
        self,
        recipients: Sequence[Recipient],
        amount_per_recipient: int,
        capacity: int | None = None,
        max_retries: int | None = None,
    ) -> list[SubmissionOutcome]:
        """Pay ``amount_per_recipient`` drops to every recipient's owner.

        Raises:
            InvalidCapacity: If capacity < 1 or larger than the ledger client accepts.
        """
        capacity = self.config.capacity if capacity is None else capacity
        limit = getattr(self.client, "max_batch_size", None)
        if limit is not None and isinstance(capacity, int) and capacity > limit:
            raise InvalidCapacity(capacity)

        batches = batch(build_instructions(recipients, amount_per_recipient), capacity)
        log.info("Sending %s transfers of %s drops in %s transactions", len(recipients), amount_per_recipient, len(batches))
        return await self.run(batches, max_retries=max_retries)


def summarize(outcomes: Sequence[SubmissionOutcome]) -> dict[str, int]:
    rejected = [o for o in outcomes if isinstance(o, Rejected)]
    uncertain = [o for o in rejected if isinstance(o.cause, RetriesExhausted) and o.cause.uncertain]
    return {
        "total": len(outcomes),
        "fulfilled": len(outcomes) - len(rejected),
        "rejected": len(rejected),
        "uncertain": len(uncertain),
    }
