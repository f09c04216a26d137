"""Closed set of errors crossing the ledger-client boundary.

The ledger client wraps whatever its transport raises into one of these
variants at the point of call, so nothing above it has to inspect raw
exception types or parse messages. The single exception is
``extract_reference_id``: some client libraries only report the hash of a
transaction they did emit inside the text of an error, and that text is
scanned here and nowhere else.
"""

import re

# Bump when the recognised message shapes change.
EMBEDDED_ID_PATTERN_VERSION = 1

_EMBEDDED_ID = re.compile(
    r"\b(?:tx_hash|txid|hash|signature)\b\s*[:=]?\s*([0-9A-Fa-f]{64})\b",
    re.IGNORECASE,
)


def extract_reference_id(message: str | None) -> str | None:
    """Return the first transaction hash following a marker word in ``message``.

    Marker words are ``hash``, ``signature``, ``tx_hash`` and ``txid``; the
    token must be 64 hex characters. Returns None when nothing matches.

    Example:
        >>> extract_reference_id("Timed out waiting for hash " + "AB" * 32)
        'ABABABABABABABABABABABABABABABABABABABABABABABABABABABABABABABAB'
    """
    if not message:
        return None
    m = _EMBEDDED_ID.search(message)
    return m.group(1).upper() if m else None


class AirdropError(Exception):
    pass


class InvalidCapacity(AirdropError, ValueError):
    def __init__(self, capacity) -> None:
        self.capacity = capacity
        super().__init__(f"Batch capacity must be an integer >= 1, got {capacity!r}")


class SubmissionError(AirdropError):
    """A submission attempt did not observe the transaction reaching its target level."""

    reference_id: str | None = None

    @property
    def candidate_reference_id(self) -> str | None:
        return self.reference_id


class Expired(SubmissionError):
    """The transaction's LastLedgerSequence passed before it was seen validated.

    ``reference_id`` is None when the expiry was detected locally, before
    anything was sent.
    """

    def __init__(
        self,
        message: str = "Transaction expired",
        *,
        reference_id: str | None = None,
        last_ledger_sequence: int | None = None,
        validated_ledger: int | None = None,
    ) -> None:
        self.reference_id = reference_id
        self.last_ledger_sequence = last_ledger_sequence
        self.validated_ledger = validated_ledger
        super().__init__(message)


class GenericSubmissionError(SubmissionError):
    def __init__(
        self,
        message: str,
        *,
        reference_id: str | None = None,
        engine_result: str | None = None,
    ) -> None:
        self.message = message
        self.reference_id = reference_id
        self.engine_result = engine_result
        super().__init__(message)

    @property
    def candidate_reference_id(self) -> str | None:
        return self.reference_id or extract_reference_id(self.message)


class StatusQueryError(AirdropError):
    pass


class ReconciliationUnknown(SubmissionError):
    """An attempt's hash could not be looked up, so whether it landed is unknown."""

    def __init__(self, reference_id: str, cause: BaseException | None = None) -> None:
        self.reference_id = reference_id
        self.cause = cause
        msg = f"Status of {reference_id} could not be determined"
        super().__init__(f"{msg}: {cause}" if cause else msg)


class RetriesExhausted(AirdropError):
    def __init__(
        self,
        last_cause: BaseException,
        attempts: int,
        *,
        unknown_reconciliations: int = 0,
    ) -> None:
        self.last_cause = last_cause
        self.attempts = attempts
        self.unknown_reconciliations = unknown_reconciliations
        super().__init__(f"Gave up after {attempts} attempts: {last_cause}")

    @property
    def uncertain(self) -> bool:
        """True when at least one status lookup failed, so the transfer may have landed anyway."""
        return self.unknown_reconciliations > 0


class RecipientFetchError(AirdropError):
    pass


__all__ = [
    "EMBEDDED_ID_PATTERN_VERSION",
    "AirdropError",
    "Expired",
    "GenericSubmissionError",
    "InvalidCapacity",
    "ReconciliationUnknown",
    "RecipientFetchError",
    "RetriesExhausted",
    "StatusQueryError",
    "SubmissionError",
    "extract_reference_id",
]
