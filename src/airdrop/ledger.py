"""Ledger-client boundary.

``LedgerClient`` is everything the submission engine needs from the
network. ``XrplLedgerClient`` implements it on top of xrpl-py's
``AsyncJsonRpcClient``: it builds the Payment or Batch for an attempt, signs
it locally so the hash is known before anything is sent, submits the blob
and polls ``tx`` until the requested level is reached or LastLedgerSequence
passes.

Whatever goes wrong below this module leaves it as one of the variants in
``airdrop.errors``.
"""

import asyncio
import contextlib
import hashlib
import logging
from typing import Protocol

from xrpl.asyncio.clients import AsyncJsonRpcClient
from xrpl.core.binarycodec import encode, encode_for_signing
from xrpl.core.keypairs import sign
from xrpl.models import Batch, BatchFlag, Payment, Transaction, TransactionFlag
from xrpl.models.requests import AccountInfo, Fee, ServerState, SubmitOnly, Tx
from xrpl.wallet import Wallet

import airdrop.constants as C
from airdrop.constants import CommitmentLevel
from airdrop.errors import (
    Expired,
    GenericSubmissionError,
    InvalidCapacity,
    StatusQueryError,
    SubmissionError,
)
from airdrop.models import FeeInfo, FreshnessToken, SubmissionAttempt, TxStatus

log = logging.getLogger("airdrop.ledger")

MAX_FEE_DROPS = 1000  # per transaction slot; refuse to pay more than 100x base


class LedgerClient(Protocol):
    async def get_freshness_token(self, payer: Wallet) -> FreshnessToken: ...
    async def get_current_height(self) -> int: ...
    async def submit_and_confirm(
        self, attempt: SubmissionAttempt, payer: Wallet, commitment_level: CommitmentLevel
    ) -> str: ...
    async def get_status(self, reference_id: str, *, search_history: bool = True) -> TxStatus: ...


def _sha512half(b: bytes) -> bytes:
    return hashlib.sha512(b).digest()[:32]


def _txid_from_signed_blob_hex(signed_blob_hex: str) -> str:
    # XRPL txid = SHA512Half(0x54584E00 || signed_bytes)
    return _sha512half(bytes.fromhex("54584E00") + bytes.fromhex(signed_blob_hex)).hex().upper()


def _level_of(result: dict) -> CommitmentLevel:
    if result.get("validated"):
        return CommitmentLevel.VALIDATED
    if result.get("ledger_index") is not None:
        return CommitmentLevel.CLOSED
    return CommitmentLevel.CURRENT


def _engine_result(result: dict) -> str | None:
    meta = result.get("meta")
    return meta.get("TransactionResult") if isinstance(meta, dict) else None


def _inner_hashes(tx_json: dict) -> list[str] | None:
    """Hashes of the inner transactions of a Batch, None for any other type.

    Inner transactions are unsigned; their id is the txid of the serialized
    RawTransaction itself.
    """
    if tx_json.get("TransactionType") != "Batch":
        return None
    return [_txid_from_signed_blob_hex(encode(r["RawTransaction"])) for r in tx_json.get("RawTransactions", [])]


@contextlib.contextmanager
def _boundary(what: str, *, reference_id: str | None = None):
    """Re-raise anything that is not already a SubmissionError as a GenericSubmissionError."""
    try:
        yield
    except SubmissionError:
        raise
    except Exception as e:
        raise GenericSubmissionError(
            f"{what} failed: {e.__class__.__name__} {e}".rstrip(),
            reference_id=reference_id,
        ) from e


class XrplLedgerClient:
    max_batch_size = C.MAX_BATCH_CAPACITY

    def __init__(
        self,
        client: AsyncJsonRpcClient,
        *,
        horizon: int = C.HORIZON,
        poll_interval: float = C.POLL_INTERVAL,
        submit_timeout: float = C.SUBMIT_TIMEOUT,
        rpc_timeout: float = C.RPC_TIMEOUT,
    ):
        self.client = client
        self.horizon = horizon
        self.poll_interval = poll_interval
        self.submit_timeout = submit_timeout
        self.rpc_timeout = rpc_timeout

    async def _rpc(self, req, *, t: float | None = None):
        return await asyncio.wait_for(self.client.request(req), timeout=t or self.rpc_timeout)

    async def _validated_ledger(self) -> int:
        ss = await self._rpc(ServerState())
        return ss.result["state"]["validated_ledger"]["seq"]

    async def get_fee_info(self) -> FeeInfo:
        r = await self._rpc(Fee())
        return FeeInfo.from_result(r.result)

    async def _fee_per_slot(self) -> int:
        fee_info = await self.get_fee_info()
        fee = fee_info.minimum_fee
        if fee_info.escalated:
            log.warning("Queue fees escalated: minimum=%s open_ledger=%s base=%s",
                        fee_info.minimum_fee, fee_info.open_ledger_fee, fee_info.base_fee)
        if fee > MAX_FEE_DROPS:
            raise GenericSubmissionError(f"Fee too high ({fee} drops > {MAX_FEE_DROPS} max), queue is full")
        return fee

    # ------------------------------------------------------------------
    # LedgerClient
    # ------------------------------------------------------------------

    async def get_current_height(self) -> int:
        with _boundary("server_state"):
            return await self._validated_ledger()

    async def get_freshness_token(self, payer: Wallet) -> FreshnessToken:
        """Sequence as of the latest validated ledger.

        An earlier attempt that is still in flight has not advanced the
        validated Sequence, so a retry reuses its Sequence and at most one
        of them can ever apply.
        """
        with _boundary("account_info"):
            ai = await self._rpc(AccountInfo(account=payer.address, ledger_index="validated", strict=True))
            if not ai.is_successful():
                raise GenericSubmissionError(f"account_info failed: {ai.result.get('error')}")
            seq = ai.result["account_data"]["Sequence"]
            validated = await self._validated_ledger()
        return FreshnessToken(sequence=seq, last_ledger_sequence=validated + self.horizon, ledger_index=validated)

    async def submit_and_confirm(
        self,
        attempt: SubmissionAttempt,
        payer: Wallet,
        commitment_level: CommitmentLevel = CommitmentLevel.VALIDATED,
    ) -> str:
        if len(attempt.batch) > self.max_batch_size:
            raise InvalidCapacity(len(attempt.batch))

        with _boundary("build"):
            txn = self.build_transaction(attempt, payer)
            fee = await self._fee_per_slot()
            if isinstance(txn, Batch):
                # Outer Batch pays for itself twice plus every inner slot.
                fee *= 2 + len(txn.raw_transactions)
            signed_blob_hex, tx_hash = self.sign(txn, payer, fee)
            inner = _inner_hashes(txn.to_xrpl())

        log.debug("submit start attempt=%s seq=%s lls=%s fee=%s tx=%s",
                  attempt.attempt_number, attempt.token.sequence, attempt.expiry_bound, fee, tx_hash)

        with _boundary("submit", reference_id=tx_hash):
            async with asyncio.timeout(self.submit_timeout):
                resp = await self._rpc(SubmitOnly(tx_blob=signed_blob_hex))
                res = resp.result
                if not resp.is_successful():
                    raise GenericSubmissionError(
                        f"submit of {tx_hash} failed: {res.get('error')}", reference_id=tx_hash
                    )

                er = res.get("engine_result")
                if isinstance(er, str) and er.startswith(("tem", "tef")):
                    raise GenericSubmissionError(
                        f"Transaction {tx_hash} rejected: {er}", reference_id=tx_hash, engine_result=er
                    )
                if isinstance(er, str) and er.startswith("tel"):
                    # Held by the local node; may still be relayed until LastLedgerSequence.
                    log.warning("tel* (may retry): %s - tracking %s until expiry", er, tx_hash)

                if commitment_level is CommitmentLevel.CURRENT and er in (C.SUCCESS, "terQUEUED"):
                    return tx_hash

                return await self._wait(tx_hash, attempt.expiry_bound, commitment_level, inner)

    async def _applied_result(self, result: dict, inner: list[str] | None) -> str | None:
        """Engine result of a validated transaction, taking a Batch's inner Payments into account.

        An all-or-nothing Batch validates with tesSUCCESS even when every inner
        Payment was rolled back, so each inner hash has to be in the ledger
        with tesSUCCESS too. Returns the first inner result that is not, or
        INNER_NOT_APPLIED for an inner transaction the ledger does not hold.
        """
        er = _engine_result(result)
        if er != C.SUCCESS or inner is None:
            return er
        if not inner:
            return C.INNER_NOT_APPLIED

        for inner_hash in inner:
            r = await self._rpc(Tx(transaction=inner_hash))
            if not r.is_successful():
                if r.result.get("error") == C.TXN_NOT_FOUND:
                    return C.INNER_NOT_APPLIED
                raise StatusQueryError(f"tx lookup for inner {inner_hash} failed: {r.result.get('error')}")
            if not r.result.get("validated"):
                return C.INNER_NOT_APPLIED
            inner_er = _engine_result(r.result)
            if inner_er != C.SUCCESS:
                log.warning("Inner transaction %s of batch did not apply: %s", inner_hash, inner_er)
                return inner_er or C.INNER_NOT_APPLIED
        return er

    async def _wait(
        self,
        tx_hash: str,
        last_ledger_sequence: int,
        level: CommitmentLevel,
        inner: list[str] | None = None,
    ) -> str:
        while True:
            r = await self._rpc(Tx(transaction=tx_hash))
            result = r.result
            if r.is_successful():
                reached = _level_of(result)
                if reached is CommitmentLevel.VALIDATED:
                    er = await self._applied_result(result, inner)
                    if er != C.SUCCESS:
                        raise GenericSubmissionError(
                            f"Transaction {tx_hash} failed: {er}", reference_id=tx_hash, engine_result=er
                        )
                    return tx_hash
                if reached.rank >= level.rank:
                    return tx_hash
            elif result.get("error") != C.TXN_NOT_FOUND:
                log.debug("tx %s lookup error: %s", tx_hash, result.get("error"))

            validated = await self._validated_ledger()
            if validated > last_ledger_sequence:
                raise Expired(
                    f"The latest validated ledger {validated} is greater than "
                    f"LastLedgerSequence {last_ledger_sequence} for hash {tx_hash}",
                    reference_id=tx_hash,
                    last_ledger_sequence=last_ledger_sequence,
                    validated_ledger=validated,
                )
            await asyncio.sleep(self.poll_interval)

    async def get_status(self, reference_id: str, *, search_history: bool = True) -> TxStatus:
        """Look up ``reference_id``.

        With ``search_history`` the node searches all the history it holds;
        otherwise only the last ``horizon`` validated ledgers.

        Raises:
            StatusQueryError: The lookup itself failed.
        """
        try:
            if search_history:
                req = Tx(transaction=reference_id)
            else:
                validated = await self._validated_ledger()
                req = Tx(transaction=reference_id, min_ledger=max(validated - self.horizon, 1), max_ledger=validated)
            r = await self._rpc(req)
        except Exception as e:
            raise StatusQueryError(f"tx lookup for {reference_id} failed: {e.__class__.__name__} {e}") from e

        result = r.result
        if not r.is_successful():
            if result.get("error") == C.TXN_NOT_FOUND:
                return TxStatus()
            raise StatusQueryError(f"tx lookup for {reference_id} failed: {result.get('error')}")

        level = _level_of(result)
        if level is not CommitmentLevel.VALIDATED:
            return TxStatus(confirmation_level=level, engine_result=_engine_result(result))

        try:
            er = await self._applied_result(result, _inner_hashes(result.get("tx_json", result)))
        except StatusQueryError:
            raise
        except Exception as e:
            raise StatusQueryError(f"inner lookups for {reference_id} failed: {e.__class__.__name__} {e}") from e
        return TxStatus(confirmation_level=level, engine_result=er)

    # ------------------------------------------------------------------
    # Construction and signing
    # ------------------------------------------------------------------

    def build_transaction(self, attempt: SubmissionAttempt, payer: Wallet) -> Transaction:
        """A plain Payment for a single transfer, otherwise an all-or-nothing Batch.

        The Batch consumes Sequence for itself and one more per inner Payment.
        """
        instructions = attempt.batch.instructions
        seq = attempt.token.sequence
        lls = attempt.expiry_bound

        if len(instructions) == 1:
            i = instructions[0]
            return Payment(
                account=payer.address,
                destination=i.recipient_address,
                amount=str(i.amount),
                sequence=seq,
                last_ledger_sequence=lls,
            )

        raw_transactions = [
            Payment(
                account=payer.address,
                destination=i.recipient_address,
                amount=str(i.amount),
                flags=TransactionFlag.TF_INNER_BATCH_TXN,
                sequence=seq + n,
                fee="0",
                signing_pub_key="",
            )
            for n, i in enumerate(instructions, start=1)
        ]
        return Batch(
            account=payer.address,
            flags=BatchFlag.TF_ALL_OR_NOTHING,
            raw_transactions=raw_transactions,
            sequence=seq,
            last_ledger_sequence=lls,
        )

    @staticmethod
    def sign(txn: Transaction, wallet: Wallet, fee: int) -> tuple[str, str]:
        """Sign ``txn`` locally. Returns (signed blob hex, transaction hash)."""
        tx = txn.to_xrpl()
        if tx.get("Flags") == 0:
            del tx["Flags"]
        tx["Fee"] = str(fee)
        tx["SigningPubKey"] = wallet.public_key

        signing_blob = encode_for_signing(tx)
        to_sign = signing_blob if isinstance(signing_blob, str) else signing_blob.hex()
        tx["TxnSignature"] = sign(to_sign, wallet.private_key)
        signed_blob_hex = encode(tx)
        return signed_blob_hex, _txid_from_signed_blob_hex(signed_blob_hex)
