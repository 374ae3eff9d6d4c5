import logging
from decimal import Decimal
from typing import Optional, List
from datetime import datetime, timezone

from domain.entities import (
    Service,
    Transaction,
    TransactionKind,
    DepositEvent,
    format_amount,
    normalize_address,
    to_units
)
from domain.services import ServiceResolver
from domain.exceptions import (
    UnauthorizedError,
    ServiceNotFoundError,
    InsufficientFundsError,
    LedgerInconsistencyError,
    UpstreamTimeoutError,
    UpstreamUnavailableError,
    InvalidServiceError,
    InvalidDepositError
)
from application.repositories import (
    IAccountRepository,
    IServiceRepository,
    ITransactionRepository,
    IDepositRepository,
    ISessionRepository,
    IUnitOfWork
)
from application.gateways import ISellerGateway, SellerResponse

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def service_to_dict(service: Service) -> dict:
    return {
        "service_id": service.id,
        "owner_account_id": service.owner_account_id,
        "name": service.name,
        "description": service.description,
        "keywords": list(service.keywords),
        "endpoint_url": service.endpoint_url,
        "price_per_query": format_amount(service.price_per_query),
        "payout_address": service.payout_address,
        "unpaid_balance": format_amount(service.unpaid_balance),
        "is_active": service.is_active
    }


def transaction_to_dict(transaction: Transaction) -> dict:
    return {
        "transaction_id": transaction.id,
        "kind": transaction.kind.value,
        "service_id": transaction.service_id,
        "seller_account_id": transaction.seller_account_id,
        "buyer_account_id": transaction.buyer_account_id,
        "amount": format_amount(transaction.amount),
        "refund_of": transaction.refund_of,
        "created_at": transaction.created_at.isoformat()
    }


class AuthenticateUseCase:
    def __init__(self, session_repo: ISessionRepository):
        self.session_repo = session_repo

    async def execute(self, session_token: Optional[str]) -> str:
        if not session_token or not session_token.strip():
            raise UnauthorizedError("Missing session token")

        session = await self.session_repo.get_active(session_token.strip(), _utcnow())
        if not session:
            raise UnauthorizedError("Invalid or expired session")

        return normalize_address(session.account_id)


class GetBalanceUseCase:
    def __init__(self, account_repo: IAccountRepository):
        self.account_repo = account_repo

    async def execute(self, account_id: str) -> dict:
        account = await self.account_repo.get(account_id)
        balance = account.balance if account else Decimal("0")
        return {
            "account_id": account_id,
            "balance": format_amount(balance)
        }


class RegisterServiceUseCase:
    def __init__(self, service_repo: IServiceRepository):
        self.service_repo = service_repo

    async def execute(
        self,
        owner_account_id: str,
        name: str,
        endpoint_url: str,
        price_per_query: Decimal,
        description: str = "",
        keywords: Optional[List[str]] = None,
        payout_address: Optional[str] = None
    ) -> Service:
        try:
            service = Service(
                id=None,
                owner_account_id=owner_account_id,
                name=name,
                description=description,
                keywords=[k.strip() for k in (keywords or []) if k and k.strip()],
                endpoint_url=endpoint_url,
                price_per_query=Decimal(str(price_per_query)),
                payout_address=payout_address or owner_account_id
            )
        except (ValueError, ArithmeticError) as e:
            raise InvalidServiceError(str(e))

        service = await self.service_repo.create(service)
        logger.info(
            f"Registered service {service.id} ({service.name}) for {owner_account_id}, "
            f"price {service.price_per_query}"
        )
        return service


class ListServicesUseCase:
    def __init__(self, service_repo: IServiceRepository):
        self.service_repo = service_repo

    async def execute(self) -> List[dict]:
        services = await self.service_repo.list_active()
        return [service_to_dict(s) for s in services]


class GetServiceUseCase:
    def __init__(self, service_repo: IServiceRepository):
        self.service_repo = service_repo

    async def execute(self, service_id: str) -> dict:
        service = await self.service_repo.get_by_id(service_id)
        if not service or not service.is_active:
            raise ServiceNotFoundError(f"Service '{service_id}' not found")
        return service_to_dict(service)


class PrepareQueryUseCase:
    """Finds the service that would answer a prompt, without charging."""

    def __init__(self, service_repo: IServiceRepository, resolver: ServiceResolver):
        self.service_repo = service_repo
        self.resolver = resolver

    async def execute(self, prompt: str) -> dict:
        services = await self.service_repo.list_active()
        service_id = await self.resolver.resolve(prompt, services)

        service = next((s for s in services if s.id == service_id), None)
        if service is None:
            logger.info(f"No service matched prompt: {prompt[:80]!r}")
            raise ServiceNotFoundError("No service can handle that request")

        logger.info(f"Matched prompt to service {service.id} ({service.name})")
        return {
            "service_id": service.id,
            "name": service.name,
            "description": service.description,
            "price": format_amount(service.price_per_query)
        }


class ListTransactionsUseCase:
    def __init__(self, transaction_repo: ITransactionRepository):
        self.transaction_repo = transaction_repo

    async def execute(
        self,
        account_id: str,
        as_seller: bool = False,
        service_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[dict]:
        if as_seller:
            transactions = await self.transaction_repo.list(
                seller_account_id=account_id,
                service_id=service_id,
                limit=limit,
                offset=offset
            )
        else:
            transactions = await self.transaction_repo.list(
                buyer_account_id=account_id,
                service_id=service_id,
                limit=limit,
                offset=offset
            )
        return [transaction_to_dict(t) for t in transactions]


class HandleQueryUseCase:
    """Charges the caller for one query and forwards it to the seller.

    Debit, transaction record and seller credit are committed together
    before the seller endpoint is called. Nothing is forwarded unless the
    debit succeeded. Forward failures are billed unless
    ``refund_on_forward_failure`` is set.
    """

    def __init__(
        self,
        authenticate: AuthenticateUseCase,
        service_repo: IServiceRepository,
        account_repo: IAccountRepository,
        transaction_repo: ITransactionRepository,
        seller_gateway: ISellerGateway,
        unit_of_work: IUnitOfWork,
        refund_on_forward_failure: bool = False
    ):
        self.authenticate = authenticate
        self.service_repo = service_repo
        self.account_repo = account_repo
        self.transaction_repo = transaction_repo
        self.seller_gateway = seller_gateway
        self.unit_of_work = unit_of_work
        self.refund_on_forward_failure = refund_on_forward_failure

    async def execute(
        self,
        session_token: Optional[str],
        service_id: str,
        payload: dict
    ) -> SellerResponse:
        buyer_id = await self.authenticate.execute(session_token)

        service = await self.service_repo.get_by_id(service_id)
        if not service or not service.is_active:
            raise ServiceNotFoundError(f"Service '{service_id}' not found")

        charge = await self._charge(buyer_id, service)

        logger.info(
            f"[Proxy] Forwarding transaction {charge.id} to {service.endpoint_url}"
        )
        try:
            response = await self.seller_gateway.forward(service.endpoint_url, payload)
        except (UpstreamTimeoutError, UpstreamUnavailableError) as e:
            logger.warning(
                f"[Proxy] Forward failed for transaction {charge.id}, "
                f"service {service.id}: {e}"
            )
            if self.refund_on_forward_failure:
                await self._refund(charge)
            raise

        logger.info(
            f"[Proxy] Seller answered {response.status_code} for transaction {charge.id}"
        )
        return response

    async def _charge(self, buyer_id: str, service: Service) -> Transaction:
        price = service.price_per_query

        account = await self.account_repo.debit(buyer_id, price)
        if account is None:
            logger.info(
                f"[Payment] Insufficient balance: account {buyer_id}, "
                f"service {service.id}, price {price}"
            )
            raise InsufficientFundsError(
                f"Payment Required: insufficient balance for price {price}"
            )

        transaction = await self.transaction_repo.create(
            Transaction(
                id=None,
                service_id=service.id,
                seller_account_id=service.owner_account_id,
                buyer_account_id=buyer_id,
                amount=price,
                created_at=_utcnow()
            )
        )

        credited = await self.service_repo.increment_unpaid(service.id, price)
        if credited is None:
            logger.error(
                f"[Payment] Ledger inconsistency: service {service.id} vanished while "
                f"charging account {buyer_id}, transaction {transaction.id}, "
                f"amount {price}; rolling back"
            )
            await self.unit_of_work.rollback()
            raise LedgerInconsistencyError(
                f"Could not credit service '{service.id}'"
            )

        await self.unit_of_work.commit()
        logger.info(
            f"[Payment] Charged {price} to {buyer_id} (balance {account.balance}), "
            f"credited service {service.id}, transaction {transaction.id}"
        )
        return transaction

    async def _refund(self, charge: Transaction) -> None:
        await self.account_repo.credit(charge.buyer_account_id, charge.amount)

        reverted = await self.service_repo.decrement_unpaid(charge.service_id, charge.amount)
        if reverted is None:
            await self.unit_of_work.rollback()
            logger.error(
                f"[Payment] Refund skipped for transaction {charge.id}: unpaid balance "
                f"of service {charge.service_id} could not be reduced by {charge.amount}"
            )
            return

        refund = await self.transaction_repo.create(
            Transaction(
                id=None,
                service_id=charge.service_id,
                seller_account_id=charge.seller_account_id,
                buyer_account_id=charge.buyer_account_id,
                amount=charge.amount,
                created_at=_utcnow(),
                kind=TransactionKind.REFUND,
                refund_of=charge.id
            )
        )
        await self.unit_of_work.commit()
        logger.info(
            f"[Payment] Refunded {charge.amount} to {charge.buyer_account_id}, "
            f"transaction {refund.id} for charge {charge.id}"
        )


class CreditDepositUseCase:
    """Credits an on-chain deposit to its sender at most once."""

    def __init__(
        self,
        deposit_repo: IDepositRepository,
        account_repo: IAccountRepository,
        unit_of_work: IUnitOfWork,
        token_decimals: int = 18
    ):
        self.deposit_repo = deposit_repo
        self.account_repo = account_repo
        self.unit_of_work = unit_of_work
        self.token_decimals = token_decimals

    async def execute(self, event: DepositEvent) -> bool:
        """Raises InvalidDepositError when the transfer can never be credited."""
        try:
            amount = event.credit_amount(self.token_decimals)
            to_units(amount)
        except (ValueError, ArithmeticError) as e:
            raise InvalidDepositError(
                f"Deposit {event.tx_hash} (log {event.log_index}) of {event.value} "
                f"cannot be credited: {e}"
            )

        recorded = await self.deposit_repo.record_if_new(event, amount)
        if not recorded:
            await self.unit_of_work.rollback()
            logger.info(
                f"[Deposit] Already processed {event.tx_hash} "
                f"(log {event.log_index}), skipping"
            )
            return False

        account = await self.account_repo.credit(event.from_address, amount)
        await self.unit_of_work.commit()

        logger.info(
            f"[Deposit] Credited {amount} to {event.from_address} from "
            f"{event.tx_hash} at block {event.block_number}, "
            f"new balance {account.balance}"
        )
        return True
