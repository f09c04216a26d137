"""Resolve ambiguous submission failures against the ledger itself.

A submission that errors locally may still have been applied: the request
could have timed out after the node relayed the blob, or LastLedgerSequence
could have passed while the transaction sat in a ledger that was validated
right at the deadline. The local error says nothing about which, so the
only trustworthy answer is a ``tx`` lookup for the hash.
"""

import logging

from airdrop.constants import FINAL_LEVEL, SUCCESS, FinalityStatus
from airdrop.ledger import LedgerClient

log = logging.getLogger("airdrop.reconcile")


class Reconciler:
    def __init__(self, client: LedgerClient):
        self.client = client

    async def reconcile(self, reference_id: str) -> FinalityStatus:
        """Classify the ledger's view of ``reference_id``.

        Returns:
            FINALIZED if the transaction is in a validated ledger with tesSUCCESS.
            NOT_FINALIZED if it is absent, not yet validated, or validated with a failure result.
            UNKNOWN if the lookup itself failed.
        """
        try:
            status = await self.client.get_status(reference_id, search_history=True)
        except Exception as e:
            log.warning("Status query degraded for %s: %s", reference_id, e)
            return FinalityStatus.UNKNOWN

        if status.confirmation_level != FINAL_LEVEL:
            log.debug("%s not final (level=%s)", reference_id, status.confirmation_level)
            return FinalityStatus.NOT_FINALIZED

        if status.engine_result not in (None, SUCCESS):
            # Validated, fee claimed, transfers not applied.
            log.warning("%s validated with %s", reference_id, status.engine_result)
            return FinalityStatus.NOT_FINALIZED

        return FinalityStatus.FINALIZED
