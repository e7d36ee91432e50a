# supplytrace/errors.py
"""Exception classes for the reconciliation and compliance core."""


class SupplyTraceError(Exception):
    """Base exception for all supplytrace errors."""

    pass


class ValidationError(SupplyTraceError):
    """Malformed input (bad quantity, missing or ambiguous identifiers).

    Always surfaced to the caller, never retried.
    """

    pass


class NotFoundError(SupplyTraceError):
    """Unknown transfer, batch, supplier or pipeline id."""

    pass


class InvalidStateError(SupplyTraceError):
    """Operation attempted on a record that is not in the expected state.

    Expected under concurrent access: the loser of a race on the same record
    receives this error.
    """

    pass


class LedgerUnavailableError(SupplyTraceError):
    """The notarization ledger could not be reached or rejected the write."""

    pass


class ConfigurationError(SupplyTraceError):
    """Configuration is invalid or missing."""

    pass
