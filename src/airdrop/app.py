import asyncio
import contextlib
import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import StrEnum

import httpx
from fastapi import APIRouter, FastAPI, HTTPException
from pydantic import BaseModel, Field, PositiveInt, model_validator
from xrpl.asyncio.clients import AsyncJsonRpcClient

import airdrop.constants as C
from airdrop.config import CLIO, RPC, cfg, engine_config, ledger_config, make_payer
from airdrop.ledger import XrplLedgerClient
from airdrop.logging_config import setup_logging
from airdrop.models import Fulfilled, Recipient, SubmissionOutcome
from airdrop.recipients import fetch_nft_holders
from airdrop.retry import retry
from airdrop.runner import BatchRunner, summarize

setup_logging()
log = logging.getLogger("airdrop.app")

to = cfg["timeout"]
TIMEOUT = 3.0


async def _probe_rippled(url: str, max_retries: int = 30, retry_delay: float = 2.0) -> None:
    """Probe the rippled RPC endpoint until it answers server_info."""
    payload = {"method": "server_info", "params": [{}]}

    async def probe(attempt: int) -> None:
        async with httpx.AsyncClient(timeout=TIMEOUT) as http:
            r = await http.post(url, json=payload)
            r.raise_for_status()
        log.info("RPC endpoint responding (attempt %s/%s)", attempt, max_retries + 1)

    await retry(probe, max_retries=max_retries, delay=retry_delay, label=f"probe {url}")


def outcome_to_dict(o: SubmissionOutcome) -> dict:
    if isinstance(o, Fulfilled):
        return {"status": "fulfilled", "hash": o.reference_id}
    return {
        "status": "rejected",
        "reason": str(o.cause),
        "uncertain": bool(getattr(o.cause, "uncertain", False)),
    }


class RunStatus(StrEnum):
    RUNNING   = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED    = "FAILED"


@dataclass
class AirdropRun:
    run_id: str
    drops: list["DropReq"]
    status: RunStatus = RunStatus.RUNNING
    results: list[dict] = field(default_factory=list)
    error: str | None = None
    started_at: float = field(default_factory=time.time)
    finished_at: float | None = None

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "status": str(self.status),
            "results": self.results,
            "error": self.error,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with asyncio.timeout(to["startup"]):
        log.info("Probing RPC endpoint %s...", RPC)
        await _probe_rippled(RPC, max_retries=to["probe_retries"], retry_delay=to["probe_delay"])

    client = AsyncJsonRpcClient(RPC)
    app.state.ledger = XrplLedgerClient(
        client,
        horizon=ledger_config.horizon,
        poll_interval=ledger_config.poll_interval,
        submit_timeout=ledger_config.submit_timeout,
        rpc_timeout=ledger_config.rpc_timeout,
    )
    app.state.clio = AsyncJsonRpcClient(CLIO)
    app.state.payer = make_payer()
    app.state.runner = BatchRunner(app.state.ledger, app.state.payer, engine_config)
    app.state.runs = {}
    app.state.active = None
    log.info("Ready. Paying from %s", app.state.payer.address)

    try:
        yield
    finally:
        log.info("Shutting down...")
        task = app.state.active
        if task is not None and not task.done():
            # Cancelling between attempts is safe; an attempt already sent is reconciled on the next run.
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
    log.info("Shutdown complete")


app = FastAPI(
    title="XRPL Airdrop",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Airdrops", "description": "Start and track airdrop runs"},
        {"name": "State", "description": "Live submission state"},
    ],
)

r_airdrops = APIRouter(prefix="/airdrops", tags=["Airdrops"])
r_state = APIRouter(prefix="/state", tags=["State"])


class RecipientReq(BaseModel):
    owner: str
    address: str = ""


class DropReq(BaseModel):
    amount: PositiveInt  # drops per recipient
    issuer: str | None = None
    nft_taxon: int | None = None
    recipients: list[RecipientReq] | None = None

    @model_validator(mode="after")
    def one_source(self):
        if (self.issuer is None) == (self.recipients is None):
            raise ValueError("exactly one of 'issuer' or 'recipients' is required")
        return self


class AirdropReq(BaseModel):
    drops: list[DropReq] = Field(min_length=1)
    capacity: int | None = Field(default=None, ge=1, le=C.MAX_BATCH_CAPACITY)
    max_retries: int | None = Field(default=None, ge=0)


async def _run_airdrop(run: AirdropRun, req: AirdropReq) -> None:
    runner: BatchRunner = app.state.runner
    rc = cfg["recipients"]
    try:
        for n, drop in enumerate(req.drops, start=1):
            if drop.issuer is not None:
                recipients = await fetch_nft_holders(
                    app.state.clio,
                    drop.issuer,
                    nft_taxon=drop.nft_taxon,
                    page_size=rc["page_size"],
                    max_retries=rc["max_retries"],
                    delay=rc["delay"],
                )
            else:
                recipients = [Recipient(owner=r.owner, address=r.address) for r in drop.recipients]

            log.info("[%s] drop %s/%s: %s recipients", run.run_id, n, len(req.drops), len(recipients))
            outcomes = await runner.execute(recipients, drop.amount, capacity=req.capacity, max_retries=req.max_retries)
            run.results.append({
                "issuer": drop.issuer,
                "recipients": len(recipients),
                "summary": summarize(outcomes),
                "outcomes": [outcome_to_dict(o) for o in outcomes],
            })
        run.status = RunStatus.COMPLETED
    except Exception as e:
        log.exception("[%s] airdrop aborted", run.run_id)
        run.status = RunStatus.FAILED
        run.error = f"{e.__class__.__name__}: {e}"
    finally:
        run.finished_at = time.time()


@app.get("/health")
def health():
    return {"status": "ok"}


@r_airdrops.post("", status_code=202)
async def start_airdrop(req: AirdropReq):
    """Start an airdrop in the background. Only one run at a time: all runs share the payer's Sequence."""
    active = app.state.active
    if active is not None and not active.done():
        raise HTTPException(status_code=409, detail="An airdrop is already running")

    run = AirdropRun(run_id=uuid.uuid4().hex, drops=req.drops)
    app.state.runs[run.run_id] = run
    app.state.active = asyncio.create_task(_run_airdrop(run, req), name=f"airdrop-{run.run_id}")
    log.info("Started airdrop %s (%s drops)", run.run_id, len(req.drops))
    return {"run_id": run.run_id, "status": str(run.status)}


@r_airdrops.get("")
async def list_airdrops():
    return [r.to_dict() for r in app.state.runs.values()]


@r_airdrops.get("/{run_id}")
async def get_airdrop(run_id: str):
    run = app.state.runs.get(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="run not found")
    return run.to_dict()


@r_state.get("/progress")
async def state_progress():
    return {"progress": [p.to_dict() for p in app.state.runner.progress]}


@r_state.get("/fees")
async def state_fees():
    """Current fee escalation state from rippled."""
    fee_info = await app.state.ledger.get_fee_info()
    return {
        "base_fee": fee_info.base_fee,
        "minimum_fee": fee_info.minimum_fee,
        "open_ledger_fee": fee_info.open_ledger_fee,
        "queue_utilization": f"{fee_info.queue_size}/{fee_info.max_queue_size}",
        "ledger_current_index": fee_info.ledger_current_index,
    }


app.include_router(r_airdrops)
app.include_router(r_state)
