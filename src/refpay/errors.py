"""
Error taxonomy for payment issuance, transaction building and reconciliation.

Each error carries the HTTP status the API boundary translates it to.
"""


class RefPayError(Exception):
    """Base class for all refpay errors."""

    status_code = 500


class ValidationError(RefPayError):
    """Malformed or missing input. Surfaced immediately, never retried."""

    status_code = 400


class NotFoundError(RefPayError):
    """Unknown or non-pending payment reference, or unknown user."""

    status_code = 404


class ExpiredError(RefPayError):
    """Payment aged out before confirmation. Terminal."""

    status_code = 410


class ConflictError(RefPayError):
    """Lost a compare-and-increment race on a user's derivation counter."""

    status_code = 409


class DerivationError(RefPayError):
    """
    Stored seed cannot be used (e.g. encryption secret rotated).

    Fatal for the user until an operator resets the seed.
    """

    status_code = 500


class LedgerError(RefPayError):
    """Transient RPC or network failure talking to the ledger or price oracle."""

    status_code = 503
