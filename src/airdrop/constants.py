from typing import Final
from enum import StrEnum


class CommitmentLevel(StrEnum):
    CURRENT   = "current"
    CLOSED    = "closed"
    VALIDATED = "validated"

    @property
    def rank(self) -> int:
        return _LEVEL_RANK[self]


_LEVEL_RANK = {
    CommitmentLevel.CURRENT: 0,
    CommitmentLevel.CLOSED: 1,
    CommitmentLevel.VALIDATED: 2,
}

# Strongest tier, the only one the network will never revert.
FINAL_LEVEL: Final = CommitmentLevel.VALIDATED


class SubmissionState(StrEnum):
    PENDING                 = "PENDING"
    SUBMITTING              = "SUBMITTING"
    AWAITING_RECONCILIATION = "AWAITING_RECONCILIATION"
    RETRYING                = "RETRYING"
    SUCCEEDED               = "SUCCEEDED"
    FAILED                  = "FAILED"


class FinalityStatus(StrEnum):
    FINALIZED     = "FINALIZED"
    NOT_FINALIZED = "NOT_FINALIZED"
    UNKNOWN       = "UNKNOWN"


TERMINAL_STATE = {SubmissionState.SUCCEEDED, SubmissionState.FAILED}

DEFAULT_CAPACITY = 5
MAX_BATCH_CAPACITY = 8  # XLS-56 limit on inner transactions
DEFAULT_MAX_RETRIES = 3
DEFAULT_INTER_ATTEMPT_DELAY_MS = 1000

HORIZON = 20  # LastLedgerSequence offset from the latest validated ledger
POLL_INTERVAL = 1.0
RPC_TIMEOUT = 5.0
SUBMIT_TIMEOUT = 60.0

SUCCESS = "tesSUCCESS"
TXN_NOT_FOUND = "txnNotFound"

# Reported in place of an engine result when a Batch validated but an inner Payment is not in the ledger.
INNER_NOT_APPLIED = "innerNotApplied"

__all__ = [
    "DEFAULT_CAPACITY",
    "DEFAULT_INTER_ATTEMPT_DELAY_MS",
    "DEFAULT_MAX_RETRIES",
    "FINAL_LEVEL",
    "HORIZON",
    "INNER_NOT_APPLIED",
    "MAX_BATCH_CAPACITY",
    "POLL_INTERVAL",
    "RPC_TIMEOUT",
    "SUBMIT_TIMEOUT",
    "SUCCESS",
    "TERMINAL_STATE",
    "TXN_NOT_FOUND",

    ######
    "CommitmentLevel",
    "FinalityStatus",
    "SubmissionState",
]
