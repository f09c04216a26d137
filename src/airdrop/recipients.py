"""NFT holder lookup.

Uses Clio's ``nfts_by_issuer`` (rippled does not serve it), following the
``marker`` until the collection is exhausted. Every page goes through
``retry`` with exponential backoff, because public Clio endpoints rate-limit
aggressively.
"""

import asyncio
import logging

from xrpl.asyncio.clients import AsyncJsonRpcClient
from xrpl.models.requests import NFTsByIssuer

from airdrop.errors import RecipientFetchError
from airdrop.models import Recipient
from airdrop.retry import Sleep, retry

log = logging.getLogger("airdrop.recipients")


async def fetch_nft_holders(
    client: AsyncJsonRpcClient,
    issuer: str,
    *,
    nft_taxon: int | None = None,
    page_size: int = 50,
    max_retries: int = 5,
    delay: float = 0.5,
    sleep: Sleep = asyncio.sleep,
) -> list[Recipient]:
    """Return one Recipient per NFT issued by ``issuer``, in the order Clio lists them.

    An owner holding several NFTs appears once per NFT.

    Args:
        client: JSON-RPC client pointed at a Clio server.
        issuer: Issuing account of the collection.
        nft_taxon: Restrict to a single taxon within the issuer's NFTs.
        page_size: ``limit`` sent with each request.
        max_retries: Retries per page.
        delay: Wait after the first failure of a page; doubles on each further failure.

    Raises:
        RetriesExhausted: A page kept failing.
    """
    recipients: list[Recipient] = []
    marker = None
    page = 1

    while True:
        async def fetch(attempt: int, marker=marker):
            r = await client.request(
                NFTsByIssuer(issuer=issuer, nft_taxon=nft_taxon, limit=page_size, marker=marker)
            )
            if not r.is_successful():
                raise RecipientFetchError(
                    f"nfts_by_issuer failed for {issuer}: {r.result.get('error')} {r.result.get('error_message', '')}".rstrip()
                )
            return r.result

        log.info("Retrieving page %s...", page)
        result = await retry(
            fetch,
            max_retries=max_retries,
            delay=delay,
            backoff=2.0,
            sleep=sleep,
            label=f"nfts_by_issuer page {page}",
        )
        nfts = result.get("nfts", [])
        recipients.extend(Recipient(owner=nft["owner"], address=nft["nft_id"]) for nft in nfts)
        log.info("Page %s retrieved! (%s NFTs)", page, len(nfts))

        marker = result.get("marker")
        if marker is None:
            break
        page += 1

    log.info("Found %s NFTs issued by %s", len(recipients), issuer)
    return recipients
