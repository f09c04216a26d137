import asyncio
import logging
import time

from xrpl.wallet import Wallet

from airdrop.config import EngineConfig
from airdrop.constants import TERMINAL_STATE, FinalityStatus, SubmissionState
from airdrop.errors import (
    EMBEDDED_ID_PATTERN_VERSION,
    Expired,
    GenericSubmissionError,
    ReconciliationUnknown,
    RetriesExhausted,
    SubmissionError,
)
from airdrop.ledger import LedgerClient
from airdrop.models import (
    BatchProgress,
    Fulfilled,
    Rejected,
    SubmissionAttempt,
    SubmissionOutcome,
    TransactionBatch,
)
from airdrop.reconcile import Reconciler
from airdrop.retry import Sleep, retry

log = logging.getLogger("airdrop.submission")


class Submitter:
    """Drives one batch to a terminal outcome.

    PENDING -> SUBMITTING -> (SUCCEEDED | AWAITING_RECONCILIATION)
            -> (SUCCEEDED | RETRYING | FAILED)

    Every attempt gets a new LastLedgerSequence but reads the payer's
    Sequence from the latest validated ledger, so an earlier attempt still in
    flight and its retry compete for one Sequence and at most one applies.
    Before an error is counted as a failed attempt, any hash it can be tied
    to is looked up on the ledger. Every hash seen so far is looked up again
    before each retry (after the Sequence was read) and once more before the
    batch is given up; a validated one ends the batch as fulfilled and
    nothing further is sent for it.
    """

    def __init__(
        self,
        client: LedgerClient,
        config: EngineConfig,
        *,
        reconciler: Reconciler | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.client = client
        self.config = config
        self.reconciler = reconciler or Reconciler(client)
        self.sleep = sleep

    async def submit(
        self,
        batch: TransactionBatch,
        payer: Wallet,
        *,
        max_retries: int | None = None,
        progress: BatchProgress | None = None,
        label: str | None = None,
    ) -> SubmissionOutcome:
        max_retries = self.config.max_retries if max_retries is None else max_retries
        p = progress or BatchProgress(index=batch.index, size=len(batch))
        label = label or f"Transaction {batch.index + 1}"

        async def attempt(n: int) -> str:
            p.attempts = n
            log.info("%s, attempt %s", label, n)
            try:
                return await self._attempt(batch, payer, n, p, label)
            except SubmissionError as e:
                p.last_error = str(e)
                log.error("%s failed on attempt %s: %s", label, n, e)
                if n <= max_retries:
                    self._transition(p, SubmissionState.RETRYING)
                raise

        try:
            reference_id = await retry(
                attempt,
                max_retries=max_retries,
                delay=self.config.delay,
                retry_on=(SubmissionError,),
                sleep=self.sleep,
                label=label,
            )
        except RetriesExhausted as e:
            landed = await self._earlier_landed(p)
            if landed is not None:
                self._transition(p, SubmissionState.SUCCEEDED)
                log.info("%s validated late, on an earlier attempt, with hash: %s", label, landed)
                return Fulfilled(reference_id=landed)

            e.unknown_reconciliations = p.unknown_reconciliations
            self._transition(p, SubmissionState.FAILED)
            if e.uncertain:
                log.error(
                    "%s permanently failed after %s retries; %s status lookup(s) failed, it may still have landed: %s",
                    label, max_retries, e.unknown_reconciliations, e.last_cause,
                )
            else:
                log.error("%s permanently failed after %s retries: %s", label, max_retries, e.last_cause)
            return Rejected(cause=e)

        self._transition(p, SubmissionState.SUCCEEDED)
        log.info("%s succeeded with hash: %s", label, reference_id)
        return Fulfilled(reference_id=reference_id)

    async def _attempt(
        self,
        batch: TransactionBatch,
        payer: Wallet,
        n: int,
        p: BatchProgress,
        label: str,
    ) -> str:
        self._transition(p, SubmissionState.SUBMITTING)

        token = await self.client.get_freshness_token(payer)
        # Only after the Sequence was read: anything validated before then is visible here.
        landed = await self._earlier_landed(p)
        if landed is not None:
            log.info("%s validated on an earlier attempt with hash: %s", label, landed)
            return landed

        height = await self.client.get_current_height()
        if height > token.last_ledger_sequence:
            raise Expired(
                f"{label} has expired: current ledger {height} exceeds LastLedgerSequence {token.last_ledger_sequence}",
                last_ledger_sequence=token.last_ledger_sequence,
                validated_ledger=height,
            )

        submission = SubmissionAttempt(batch=batch, attempt_number=n, token=token)
        try:
            reference_id = await self.client.submit_and_confirm(submission, payer, self.config.commitment_level)
        except (Expired, GenericSubmissionError) as e:
            candidate = e.candidate_reference_id
            if candidate is None:
                raise
            if isinstance(e, Expired):
                log.warning("%s exceeded LastLedgerSequence, checking status of %s...", label, candidate)
            elif e.reference_id is None:
                log.warning("%s error text names hash %s (pattern v%s), checking status...",
                            label, candidate, EMBEDDED_ID_PATTERN_VERSION)
            else:
                log.warning("%s error carries hash %s, checking status...", label, candidate)

            self._transition(p, SubmissionState.AWAITING_RECONCILIATION)
            p.add_reference_id(candidate)
            status = await self._reconcile(candidate, p)
            if status is FinalityStatus.FINALIZED:
                log.info("%s already validated on-ledger with hash: %s", label, candidate)
                return candidate
            if status is FinalityStatus.UNKNOWN:
                raise ReconciliationUnknown(candidate, cause=e) from e
            raise

        p.add_reference_id(reference_id)
        return reference_id

    async def _reconcile(self, reference_id: str, p: BatchProgress) -> FinalityStatus:
        status = await self.reconciler.reconcile(reference_id)
        if status is FinalityStatus.UNKNOWN:
            p.unknown_reconciliations += 1
        return status

    async def _earlier_landed(self, p: BatchProgress) -> str | None:
        """First hash from an earlier attempt that is now final, if any."""
        for reference_id in list(p.reference_ids):
            if await self._reconcile(reference_id, p) is FinalityStatus.FINALIZED:
                return reference_id
        return None

    @staticmethod
    def _transition(p: BatchProgress, state: SubmissionState) -> None:
        log.debug("%s --> %s  batch %s", p.state, state, p.index + 1)
        p.state = state
        if state in TERMINAL_STATE:
            p.finalized_at = time.time()
