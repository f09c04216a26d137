from unittest import IsolatedAsyncioTestCase

from xrpl.models.requests import NFTsByIssuer

from airdrop.errors import RecipientFetchError, RetriesExhausted
from airdrop.models import Recipient
from airdrop.recipients import fetch_nft_holders

from fakes import FakeRpc, RecordingSleep, error, ok

ISSUER = "rHb9CJAWyB4rj91VRWn96DkukG4bwdtyTh"


def nft(n, owner):
    return {"nft_id": f"{n:064X}", "owner": owner, "issuer": ISSUER}


def page(nfts, marker=None):
    result = {"issuer": ISSUER, "nfts": nfts}
    if marker is not None:
        result["marker"] = marker
    return ok(result)


class TestFetchNftHolders(IsolatedAsyncioTestCase):
    def setUp(self):
        self.sleep = RecordingSleep()

    async def test_follows_marker(self):
        rpc = FakeRpc({NFTsByIssuer: [
            page([nft(1, "rA"), nft(2, "rB")], marker="m1"),
            page([nft(3, "rA")]),
        ]})

        holders = await fetch_nft_holders(rpc, ISSUER, page_size=2, sleep=self.sleep)

        self.assertEqual(holders, [
            Recipient(owner="rA", address=f"{1:064X}"),
            Recipient(owner="rB", address=f"{2:064X}"),
            Recipient(owner="rA", address=f"{3:064X}"),
        ])
        first, second = rpc.sent(NFTsByIssuer)
        self.assertIsNone(first.marker)
        self.assertEqual(second.marker, "m1")
        self.assertEqual(first.limit, 2)
        self.assertEqual(self.sleep.calls, [])

    async def test_taxon_is_forwarded(self):
        rpc = FakeRpc({NFTsByIssuer: page([])})

        self.assertEqual(await fetch_nft_holders(rpc, ISSUER, nft_taxon=3, sleep=self.sleep), [])
        self.assertEqual(rpc.sent(NFTsByIssuer)[0].nft_taxon, 3)

    async def test_page_retried_with_backoff(self):
        rpc = FakeRpc({NFTsByIssuer: [
            ConnectionError("rate limited"),
            error("slowDown"),
            page([nft(1, "rA")]),
        ]})

        holders = await fetch_nft_holders(rpc, ISSUER, delay=0.5, sleep=self.sleep)

        self.assertEqual(len(holders), 1)
        self.assertEqual(self.sleep.calls, [0.5, 1.0])

    async def test_page_gives_up(self):
        rpc = FakeRpc({NFTsByIssuer: error("slowDown")})

        with self.assertRaises(RetriesExhausted) as cm:
            await fetch_nft_holders(rpc, ISSUER, max_retries=2, delay=0.5, sleep=self.sleep)

        self.assertIsInstance(cm.exception.last_cause, RecipientFetchError)
        self.assertEqual(len(rpc.sent(NFTsByIssuer)), 3)
        self.assertEqual(self.sleep.calls, [0.5, 1.0])
