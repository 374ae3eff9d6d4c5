from enum import Enum


class DomainException(Exception):
    pass


class QueryStage(str, Enum):
    AUTHENTICATING = "authenticating"
    RESOLVING = "resolving"
    DEBITING = "debiting"
    RECORDING = "recording"
    CREDITING_SELLER = "crediting_seller"
    FORWARDING = "forwarding"
    RESPONDING = "responding"


class QueryError(DomainException):
    """Terminal failure of a query, tagged with the stage it failed in."""

    stage = QueryStage.AUTHENTICATING

    def __init__(self, message: str = "", stage: QueryStage = None):
        super().__init__(message)
        if stage is not None:
            self.stage = stage


class UnauthorizedError(QueryError):
    stage = QueryStage.AUTHENTICATING


class ServiceNotFoundError(QueryError):
    stage = QueryStage.RESOLVING


class InsufficientFundsError(QueryError):
    stage = QueryStage.DEBITING


class LedgerInconsistencyError(QueryError):
    stage = QueryStage.CREDITING_SELLER


class UpstreamUnavailableError(QueryError):
    stage = QueryStage.FORWARDING


class UpstreamTimeoutError(QueryError):
    stage = QueryStage.FORWARDING


class InvalidServiceError(DomainException):
    pass


class ChainRPCError(DomainException):
    pass


class InvalidDepositError(DomainException):
    """A chain transfer that can never be credited (e.g. outside the ledger range)."""
