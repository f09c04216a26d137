from unittest import IsolatedAsyncioTestCase

from xrpl.wallet import Wallet

from airdrop.config import EngineConfig
from airdrop.constants import CommitmentLevel, SubmissionState
from airdrop.errors import (
    Expired,
    GenericSubmissionError,
    ReconciliationUnknown,
    RetriesExhausted,
    StatusQueryError,
)
from airdrop.models import BatchProgress, Fulfilled, Rejected, TransactionBatch, TransferInstruction, TxStatus
from airdrop.submission import Submitter

from fakes import VALIDATED_OK, FakeLedgerClient, RecordingSleep, h


def a_batch(n=3, index=0):
    return TransactionBatch(
        index=index,
        instructions=tuple(TransferInstruction(recipient_address=f"r{i}", amount=10) for i in range(n)),
    )


class TestSubmitter(IsolatedAsyncioTestCase):
    def setUp(self):
        self.payer = Wallet.create()
        self.sleep = RecordingSleep()
        self.config = EngineConfig(max_retries=3, inter_attempt_delay_ms=250)

    def submitter(self, client):
        return Submitter(client, self.config, sleep=self.sleep)

    async def test_first_attempt_succeeds(self):
        client = FakeLedgerClient([h("A")])
        progress = BatchProgress(index=0, size=3)

        outcome = await self.submitter(client).submit(a_batch(), self.payer, progress=progress)

        self.assertEqual(outcome, Fulfilled(reference_id=h("A")))
        self.assertTrue(outcome.ok)
        self.assertEqual(len(client.submissions), 1)
        self.assertEqual(client.status_queries, [])
        self.assertEqual(self.sleep.calls, [])
        self.assertIs(progress.state, SubmissionState.SUCCEEDED)
        self.assertEqual(progress.attempts, 1)
        self.assertEqual(progress.reference_ids, [h("A")])
        self.assertIsNotNone(progress.finalized_at)

    async def test_expired_but_validated_is_fulfilled(self):
        client = FakeLedgerClient(
            [Expired(reference_id=h("B"), last_ledger_sequence=120, validated_ledger=121)],
            statuses={h("B"): VALIDATED_OK},
        )

        outcome = await self.submitter(client).submit(a_batch(), self.payer)

        self.assertEqual(outcome, Fulfilled(reference_id=h("B")))
        self.assertEqual(len(client.submissions), 1)
        self.assertEqual(client.status_queries, [h("B")])
        self.assertEqual(self.sleep.calls, [])

    async def test_always_expired_is_rejected_after_max_retries(self):
        client = FakeLedgerClient([Expired(reference_id=h(c)) for c in "CDEF"])
        progress = BatchProgress(index=0, size=3)

        outcome = await self.submitter(client).submit(a_batch(), self.payer, progress=progress)

        self.assertIsInstance(outcome, Rejected)
        self.assertFalse(outcome.ok)
        self.assertIsInstance(outcome.cause, RetriesExhausted)
        self.assertEqual(outcome.cause.attempts, 4)
        self.assertIsInstance(outcome.cause.last_cause, Expired)
        self.assertFalse(outcome.cause.uncertain)
        self.assertEqual(len(client.submissions), 4)
        # each retry looks up every earlier hash first, then all of them once more before giving up
        self.assertEqual(client.status_queries, [h(c) for c in "C" "CD" "CDE" "CDEF" "CDEF"])
        self.assertEqual(self.sleep.calls, [0.25, 0.25, 0.25])
        self.assertIs(progress.state, SubmissionState.FAILED)
        self.assertEqual(progress.reference_ids, [h(c) for c in "CDEF"])

    async def test_every_attempt_gets_a_fresh_token(self):
        client = FakeLedgerClient([Expired(reference_id=h("C")), h("D")])

        await self.submitter(client).submit(a_batch(), self.payer)

        self.assertEqual([s.attempt_number for s in client.submissions], [1, 2])
        first, second = client.submissions
        self.assertIsNot(first.token, second.token)
        self.assertEqual(first.batch, second.batch)

    async def test_generic_error_with_embedded_hash_is_reconciled(self):
        err = GenericSubmissionError(f"Timed out waiting for hash {h('7')}")
        client = FakeLedgerClient([err], statuses={h("7"): VALIDATED_OK})

        outcome = await self.submitter(client).submit(a_batch(), self.payer)

        self.assertEqual(outcome, Fulfilled(reference_id=h("7")))
        self.assertEqual(len(client.submissions), 1)

    async def test_generic_error_without_hash_is_retried(self):
        client = FakeLedgerClient([GenericSubmissionError("connection reset"), h("A")])

        outcome = await self.submitter(client).submit(a_batch(), self.payer)

        self.assertEqual(outcome, Fulfilled(reference_id=h("A")))
        self.assertEqual(client.status_queries, [])
        self.assertEqual(len(client.submissions), 2)
        self.assertEqual(self.sleep.calls, [0.25])

    async def test_validated_failure_is_retried(self):
        failed = TxStatus(confirmation_level=CommitmentLevel.VALIDATED, engine_result="tecUNFUNDED_PAYMENT")
        err = GenericSubmissionError("rejected", reference_id=h("A"), engine_result="tecUNFUNDED_PAYMENT")
        client = FakeLedgerClient([err, h("B")], statuses={h("A"): failed})
        progress = BatchProgress(index=0, size=3)

        outcome = await self.submitter(client).submit(a_batch(), self.payer, progress=progress)

        self.assertEqual(outcome, Fulfilled(reference_id=h("B")))
        self.assertEqual(progress.attempts, 2)
        self.assertEqual(progress.reference_ids, [h("A"), h("B")])

    async def test_local_expiry_does_not_submit(self):
        client = FakeLedgerClient()
        client.current_height = 10_000

        outcome = await self.submitter(client).submit(a_batch(), self.payer, max_retries=1)

        self.assertIsInstance(outcome, Rejected)
        self.assertEqual(client.submissions, [])
        self.assertEqual(client.status_queries, [])
        self.assertIsInstance(outcome.cause.last_cause, Expired)
        self.assertIsNone(outcome.cause.last_cause.reference_id)
        self.assertEqual(outcome.cause.attempts, 2)

    async def test_unknown_reconciliation_is_uncertain(self):
        client = FakeLedgerClient(
            [Expired(reference_id=h("A")), Expired(reference_id=h("B"))],
            statuses={h("A"): StatusQueryError("down"), h("B"): StatusQueryError("down")},
        )
        progress = BatchProgress(index=0, size=3)

        with self.assertLogs("airdrop", level="WARNING") as logs:
            outcome = await self.submitter(client).submit(a_batch(), self.payer, max_retries=1, progress=progress)

        self.assertIsInstance(outcome, Rejected)
        self.assertTrue(outcome.cause.uncertain)
        self.assertIsInstance(outcome.cause.last_cause, ReconciliationUnknown)
        self.assertEqual(outcome.cause.last_cause.reference_id, h("B"))
        self.assertEqual(outcome.cause.unknown_reconciliations, 5)
        self.assertEqual(progress.unknown_reconciliations, 5)
        self.assertEqual(len(client.submissions), 2)
        self.assertTrue(any("may still have landed" in line for line in logs.output))

    async def test_zero_retries_means_one_attempt(self):
        client = FakeLedgerClient([Expired(reference_id=h("A"))])

        outcome = await self.submitter(client).submit(a_batch(), self.payer, max_retries=0)

        self.assertIsInstance(outcome, Rejected)
        self.assertEqual(len(client.submissions), 1)
        self.assertEqual(self.sleep.calls, [])

    async def test_non_submission_error_propagates(self):
        client = FakeLedgerClient([RuntimeError("bug")])

        with self.assertRaises(RuntimeError):
            await self.submitter(client).submit(a_batch(), self.payer)
        self.assertEqual(len(client.submissions), 1)

    async def test_earlier_attempt_validated_before_retry_is_not_resent(self):
        timeout = GenericSubmissionError("Timed out", reference_id=h("A"))
        client = FakeLedgerClient([timeout, h("B")], statuses={h("A"): [TxStatus(), VALIDATED_OK]})
        progress = BatchProgress(index=0, size=3)

        outcome = await self.submitter(client).submit(a_batch(), self.payer, progress=progress)

        self.assertEqual(outcome, Fulfilled(reference_id=h("A")))
        self.assertEqual(len(client.submissions), 1)
        self.assertEqual(client.status_queries, [h("A"), h("A")])
        self.assertEqual(self.sleep.calls, [0.25])
        self.assertIs(progress.state, SubmissionState.SUCCEEDED)
        self.assertEqual(progress.attempts, 2)

    async def test_earlier_attempt_validated_after_last_retry_is_fulfilled(self):
        timeout = GenericSubmissionError("Timed out", reference_id=h("A"))
        client = FakeLedgerClient(
            [timeout, GenericSubmissionError("connection reset")],
            statuses={h("A"): [TxStatus(), TxStatus(), VALIDATED_OK]},
        )
        progress = BatchProgress(index=0, size=3)

        with self.assertLogs("airdrop.submission", level="INFO") as logs:
            outcome = await self.submitter(client).submit(a_batch(), self.payer, max_retries=1, progress=progress)

        self.assertEqual(outcome, Fulfilled(reference_id=h("A")))
        self.assertEqual(len(client.submissions), 2)
        self.assertEqual(client.status_queries, [h("A")] * 3)
        self.assertIs(progress.state, SubmissionState.SUCCEEDED)
        self.assertTrue(any("validated late" in line for line in logs.output))

    async def test_reconciliation_reads_history(self):
        client = FakeLedgerClient([Expired(reference_id=h("A"))], statuses={h("A"): VALIDATED_OK})

        await self.submitter(client).submit(a_batch(), self.payer)

        self.assertEqual(client.history_flags, [True])

    async def test_embedded_hash_is_logged_with_pattern_version(self):
        err = GenericSubmissionError(f"Timed out waiting for hash {h('7')}")
        client = FakeLedgerClient([err], statuses={h("7"): VALIDATED_OK})

        with self.assertLogs("airdrop.submission", level="WARNING") as logs:
            await self.submitter(client).submit(a_batch(), self.payer)

        self.assertIn("pattern v1", logs.output[0])
