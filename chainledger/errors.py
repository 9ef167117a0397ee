"""Exception taxonomy shared by providers, resolvers and the run orchestrators."""

from __future__ import annotations


class ChainLedgerError(Exception):
    """Base class for all chainledger failures."""


class ConfigError(ChainLedgerError):
    pass


class NotFoundError(ChainLedgerError):
    """A wallet, chain or protocol referenced by a request does not exist."""


class ProviderUnavailable(ChainLedgerError):
    """An RPC or HTTP provider timed out, returned non-2xx, or returned an error body."""

    def __init__(self, message: str, provider: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class SchemaError(ChainLedgerError):
    """An ABI mapping is structurally malformed."""


class UnsupportedReadError(ChainLedgerError):
    """An ABI mapping is well-formed but asks for a read outside the allow-list."""


class AllResolutionsFailed(ChainLedgerError):
    """Every balance in a scan failed to resolve; the chain is treated as unavailable."""

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = errors or []


class DualSourceFailure(ChainLedgerError):
    """Every source in an ordered fallback chain failed."""

    def __init__(self, failures: list[tuple[str, str]], label: str = "Provider chain"):
        self.failures = failures
        details = "; ".join(f"{name}={message}" for name, message in failures)
        super().__init__(f"{label} failed. {details}")


class NoScanEligibleUniverse(ChainLedgerError):
    pass


class BalanceResolverNotConfigured(ChainLedgerError):
    pass


class RpcUrlSafetyError(ChainLedgerError):
    pass


class ProtocolReadError(ChainLedgerError):
    """A protocol position read failed; carries the protocol it belongs to."""

    def __init__(self, message: str, protocol_id: str | None = None, label: str | None = None):
        super().__init__(message)
        self.protocol_id = protocol_id
        self.label = label
