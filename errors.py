# errors.py - Error taxonomy shared by the deposit engine, ledger and withdrawal path


class CustodiaError(Exception):
    """Base class for every error raised by the engine."""


class InvalidInput(CustodiaError, ValueError):
    """Bad user id, malformed address or amount. Raised before any I/O."""


class TransientChainError(CustodiaError):
    """RPC timeout, connection error or 5xx from the chain endpoint."""


class LedgerConflict(CustodiaError):
    """Row lock contention, duplicate credit or a missing ledger row."""


class InsufficientFunds(LedgerConflict):
    pass


class FatalConfigError(CustodiaError):
    """Missing or unparsable configuration; the process must not start."""
