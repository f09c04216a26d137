from unittest import TestCase

from airdrop.batcher import batch, build_instructions
from airdrop.errors import InvalidCapacity
from airdrop.models import Recipient, TransferInstruction


def instructions(n, amount=10):
    return [TransferInstruction(recipient_address=f"r{i}", amount=amount) for i in range(n)]


class TestBatch(TestCase):
    def test_twelve_by_five(self):
        batches = batch(instructions(12), 5)
        self.assertEqual([len(b) for b in batches], [5, 5, 2])
        self.assertEqual([b.index for b in batches], [0, 1, 2])

    def test_order_is_preserved(self):
        ins = instructions(7)
        flat = [i for b in batch(ins, 3) for i in b.instructions]
        self.assertEqual(flat, ins)

    def test_batch_count_is_ceiling(self):
        for n, c in [(1, 1), (5, 5), (6, 5), (10, 3), (8, 8), (9, 8)]:
            with self.subTest(n=n, c=c):
                batches = batch(instructions(n), c)
                self.assertEqual(len(batches), -(-n // c))
                self.assertTrue(all(1 <= len(b) <= c for b in batches))
                self.assertTrue(all(len(b) == c for b in batches[:-1]))

    def test_empty_input(self):
        self.assertEqual(batch([], 5), [])

    def test_capacity_one(self):
        batches = batch(instructions(3), 1)
        self.assertEqual([len(b) for b in batches], [1, 1, 1])

    def test_invalid_capacity(self):
        for capacity in (0, -1, 2.5, True, "5"):
            with self.subTest(capacity=capacity):
                with self.assertRaises(InvalidCapacity):
                    batch(instructions(3), capacity)

    def test_invalid_capacity_is_a_value_error(self):
        with self.assertRaises(ValueError):
            batch(instructions(3), 0)

    def test_total_amount(self):
        (b,) = batch(instructions(4, amount=25), 5)
        self.assertEqual(b.total_amount, 100)


class TestBuildInstructions(TestCase):
    def test_pays_owner_in_order(self):
        recipients = [Recipient(owner=f"rOwner{i}", address=f"{i:064X}") for i in range(3)]
        ins = build_instructions(recipients, 1_000_000)
        self.assertEqual([i.recipient_address for i in ins], ["rOwner0", "rOwner1", "rOwner2"])
        self.assertTrue(all(i.amount == 1_000_000 for i in ins))

    def test_negative_amount_rejected(self):
        with self.assertRaises(ValueError):
            build_instructions([Recipient(owner="rA", address="x")], -1)
