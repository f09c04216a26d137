import argparse
import asyncio
import logging
import sys
from decimal import Decimal, InvalidOperation

import uvicorn
from xrpl.asyncio.clients import AsyncJsonRpcClient
from xrpl.utils import xrp_to_drops

from airdrop.config import CLIO, RPC, cfg, engine_config, ledger_config, make_payer
from airdrop.ledger import XrplLedgerClient
from airdrop.logging_config import setup_logging
from airdrop.models import Rejected
from airdrop.recipients import fetch_nft_holders
from airdrop.runner import BatchRunner, summarize

log = logging.getLogger("airdrop")


def _positive_xrp(value: str) -> Decimal:
    try:
        xrp = Decimal(value)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"not a number: {value!r}") from None
    if not xrp.is_finite() or xrp <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive amount of XRP: {value!r}")
    return xrp


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog="airdrop")
    sub = parser.add_subparsers(dest="command")

    serve = sub.add_parser("serve", help="Run the HTTP service.")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)

    drop = sub.add_parser("drop", help="Pay every holder of one or more NFT collections.")
    drop.add_argument("-i", "--issuer",
                      action="append",
                      required=True,
                      help="Issuer of an NFT collection. Repeat for several collections.",
                      )
    drop.add_argument("-a", "--amount",
                      action="append",
                      required=True,
                      type=_positive_xrp,
                      help="XRP per holder, one per --issuer, in the same order.",
                      )
    drop.add_argument("-t", "--taxon",
                      type=int,
                      help="Only NFTs with this taxon.",
                      )
    drop.add_argument("-c", "--capacity",
                      type=int,
                      help="Transfers per transaction.",
                      )
    drop.add_argument("-r", "--max-retries",
                      type=int,
                      help="Retries per transaction after the first attempt.",
                      )

    args = parser.parse_args(argv)
    if args.command == "drop" and len(args.issuer) != len(args.amount):
        parser.error("every --issuer needs a matching --amount")
    return args


async def drop(args) -> int:
    client = AsyncJsonRpcClient(RPC)
    ledger = XrplLedgerClient(
        client,
        horizon=ledger_config.horizon,
        poll_interval=ledger_config.poll_interval,
        submit_timeout=ledger_config.submit_timeout,
        rpc_timeout=ledger_config.rpc_timeout,
    )
    clio = AsyncJsonRpcClient(CLIO)
    runner = BatchRunner(ledger, make_payer(), engine_config)
    rc = cfg["recipients"]

    rejected = 0
    for issuer, xrp in zip(args.issuer, args.amount):
        recipients = await fetch_nft_holders(
            clio,
            issuer,
            nft_taxon=args.taxon,
            page_size=rc["page_size"],
            max_retries=rc["max_retries"],
            delay=rc["delay"],
        )
        amount = int(xrp_to_drops(xrp))
        log.info("Airdropping %s XRP to %s holders of %s", xrp, len(recipients), issuer)
        outcomes = await runner.execute(recipients, amount, capacity=args.capacity, max_retries=args.max_retries)

        for i, o in enumerate(outcomes, start=1):
            if isinstance(o, Rejected):
                log.error("Transaction %s/%s rejected: %s", i, len(outcomes), o.cause)
            else:
                log.info("Transaction %s/%s: %s", i, len(outcomes), o.reference_id)
        summary = summarize(outcomes)
        log.info("%s: %s", issuer, summary)
        rejected += summary["rejected"]

    return 1 if rejected else 0


def main(argv=None):
    args = parse_args(argv)
    if args.command == "drop":
        setup_logging()
        sys.exit(asyncio.run(drop(args)))
    host = getattr(args, "host", "0.0.0.0")
    port = getattr(args, "port", 8000)
    uvicorn.run("airdrop.app:app", host=host, port=port, lifespan="on")


if __name__ == "__main__":
    main()
