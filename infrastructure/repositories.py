import uuid
from decimal import Decimal
from typing import Optional, List
from datetime import datetime
from sqlalchemy import select, update, func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from domain.entities import (
    Account,
    Service,
    Transaction,
    TransactionKind,
    DepositEvent,
    Session,
    to_units,
    from_units,
    normalize_address,
)
from infrastructure.models import (
    AccountModel,
    ServiceModel,
    TransactionModel,
    DepositModel,
    ListenerCheckpointModel,
    SessionModel,
)
from application.repositories import (
    IAccountRepository,
    IServiceRepository,
    ITransactionRepository,
    IDepositRepository,
    ICheckpointRepository,
    ISessionRepository,
)


def insert_ignoring_conflicts(session: AsyncSession, model, index_elements: List[str]):
    """INSERT ... ON CONFLICT DO NOTHING for the bound dialect."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(model)
    elif dialect == "sqlite":
        stmt = sqlite.insert(model)
    else:
        raise NotImplementedError(f"Unsupported database dialect: {dialect}")
    return stmt.on_conflict_do_nothing(index_elements=index_elements)


class AccountRepository(IAccountRepository):
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, account_id: str) -> Optional[Account]:
        result = await self.session.execute(
            select(AccountModel)
            .where(AccountModel.id == account_id)
            .execution_options(populate_existing=True)
        )
        db_account = result.scalar_one_or_none()

        if not db_account:
            return None

        return Account(
            id=db_account.id,
            balance=from_units(db_account.balance_units),
            updated_at=db_account.updated_at
        )

    async def debit(self, account_id: str, amount: Decimal) -> Optional[Account]:
        units = to_units(amount)
        result = await self.session.execute(
            update(AccountModel)
            .where(
                AccountModel.id == account_id,
                AccountModel.balance_units >= units
            )
            .values(
                balance_units=AccountModel.balance_units - units,
                updated_at=func.now()
            )
            .returning(
                AccountModel.id,
                AccountModel.balance_units,
                AccountModel.updated_at
            )
            .execution_options(synchronize_session=False)
        )
        row = result.one_or_none()

        if row is None:
            return None

        return Account(
            id=row.id,
            balance=from_units(row.balance_units),
            updated_at=row.updated_at
        )

    async def credit(self, account_id: str, amount: Decimal) -> Account:
        units = to_units(amount)
        await self.session.execute(
            insert_ignoring_conflicts(self.session, AccountModel, ["id"])
            .values(id=account_id, balance_units=0)
        )
        result = await self.session.execute(
            update(AccountModel)
            .where(AccountModel.id == account_id)
            .values(
                balance_units=AccountModel.balance_units + units,
                updated_at=func.now()
            )
            .returning(
                AccountModel.id,
                AccountModel.balance_units,
                AccountModel.updated_at
            )
            .execution_options(synchronize_session=False)
        )
        row = result.one()

        return Account(
            id=row.id,
            balance=from_units(row.balance_units),
            updated_at=row.updated_at
        )


def _service_from_model(db_service: ServiceModel) -> Service:
    return Service(
        id=db_service.id,
        owner_account_id=db_service.owner_account_id,
        name=db_service.name,
        description=db_service.description or "",
        keywords=list(db_service.keywords or []),
        endpoint_url=db_service.endpoint_url,
        price_per_query=from_units(db_service.price_units),
        payout_address=db_service.payout_address,
        unpaid_balance=from_units(db_service.unpaid_units),
        is_active=db_service.is_active,
        created_at=db_service.created_at
    )


class ServiceRepository(IServiceRepository):
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, service: Service) -> Service:
        db_service = ServiceModel(
            id=service.id or str(uuid.uuid4()),
            owner_account_id=service.owner_account_id,
            name=service.name,
            description=service.description,
            keywords=list(service.keywords),
            endpoint_url=service.endpoint_url,
            price_units=to_units(service.price_per_query),
            payout_address=service.payout_address,
            unpaid_units=to_units(service.unpaid_balance),
            is_active=service.is_active
        )
        self.session.add(db_service)
        await self.session.flush()
        await self.session.refresh(db_service)

        return _service_from_model(db_service)

    async def get_by_id(self, service_id: str) -> Optional[Service]:
        result = await self.session.execute(
            select(ServiceModel)
            .where(ServiceModel.id == service_id)
            .execution_options(populate_existing=True)
        )
        db_service = result.scalar_one_or_none()

        if not db_service:
            return None

        return _service_from_model(db_service)

    async def list_active(self) -> List[Service]:
        result = await self.session.execute(
            select(ServiceModel)
            .where(ServiceModel.is_active.is_(True))
            .order_by(ServiceModel.created_at, ServiceModel.id)
            .execution_options(populate_existing=True)
        )
        return [_service_from_model(s) for s in result.scalars().all()]

    async def increment_unpaid(
        self,
        service_id: str,
        amount: Decimal
    ) -> Optional[Service]:
        units = to_units(amount)
        result = await self.session.execute(
            update(ServiceModel)
            .where(ServiceModel.id == service_id)
            .values(unpaid_units=ServiceModel.unpaid_units + units)
            .returning(ServiceModel.id)
            .execution_options(synchronize_session=False)
        )
        if result.one_or_none() is None:
            return None

        return await self.get_by_id(service_id)

    async def decrement_unpaid(
        self,
        service_id: str,
        amount: Decimal
    ) -> Optional[Service]:
        units = to_units(amount)
        result = await self.session.execute(
            update(ServiceModel)
            .where(
                ServiceModel.id == service_id,
                ServiceModel.unpaid_units >= units
            )
            .values(unpaid_units=ServiceModel.unpaid_units - units)
            .returning(ServiceModel.id)
            .execution_options(synchronize_session=False)
        )
        if result.one_or_none() is None:
            return None

        return await self.get_by_id(service_id)


def _transaction_from_model(db_transaction: TransactionModel) -> Transaction:
    return Transaction(
        id=db_transaction.id,
        service_id=db_transaction.service_id,
        seller_account_id=db_transaction.seller_account_id,
        buyer_account_id=db_transaction.buyer_account_id,
        amount=from_units(db_transaction.amount_units),
        created_at=db_transaction.created_at,
        kind=TransactionKind(db_transaction.kind),
        refund_of=db_transaction.refund_of
    )


class TransactionRepository(ITransactionRepository):
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, transaction: Transaction) -> Transaction:
        db_transaction = TransactionModel(
            id=transaction.id or str(uuid.uuid4()),
            service_id=transaction.service_id,
            seller_account_id=transaction.seller_account_id,
            buyer_account_id=transaction.buyer_account_id,
            amount_units=to_units(transaction.amount),
            kind=transaction.kind.value,
            refund_of=transaction.refund_of,
            created_at=transaction.created_at
        )
        self.session.add(db_transaction)
        await self.session.flush()
        await self.session.refresh(db_transaction)

        return _transaction_from_model(db_transaction)

    async def get(self, transaction_id: str) -> Optional[Transaction]:
        result = await self.session.execute(
            select(TransactionModel).where(TransactionModel.id == transaction_id)
        )
        db_transaction = result.scalar_one_or_none()

        if not db_transaction:
            return None

        return _transaction_from_model(db_transaction)

    async def list(
        self,
        buyer_account_id: Optional[str] = None,
        seller_account_id: Optional[str] = None,
        service_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[Transaction]:
        query = select(TransactionModel)

        if buyer_account_id:
            query = query.where(TransactionModel.buyer_account_id == buyer_account_id)
        if seller_account_id:
            query = query.where(TransactionModel.seller_account_id == seller_account_id)
        if service_id:
            query = query.where(TransactionModel.service_id == service_id)

        query = query.order_by(TransactionModel.created_at.desc(), TransactionModel.id)
        query = query.limit(limit).offset(offset)

        result = await self.session.execute(query)
        return [_transaction_from_model(t) for t in result.scalars().all()]


class DepositRepository(IDepositRepository):
    def __init__(self, session: AsyncSession):
        self.session = session

    async def record_if_new(self, event: DepositEvent, amount: Decimal) -> bool:
        result = await self.session.execute(
            insert_ignoring_conflicts(
                self.session, DepositModel, ["tx_hash", "log_index"]
            )
            .values(
                tx_hash=event.tx_hash,
                log_index=event.log_index,
                from_address=event.from_address,
                to_address=event.to_address,
                amount_units=to_units(amount),
                block_number=event.block_number
            )
            .returning(DepositModel.id)
        )
        return result.one_or_none() is not None

    async def exists(self, tx_hash: str, log_index: int = -1) -> bool:
        result = await self.session.execute(
            select(func.count(DepositModel.id)).where(
                DepositModel.tx_hash == tx_hash.lower(),
                DepositModel.log_index == log_index
            )
        )
        return result.scalar() > 0


class CheckpointRepository(ICheckpointRepository):
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, name: str) -> Optional[int]:
        result = await self.session.execute(
            select(ListenerCheckpointModel.block_number)
            .where(ListenerCheckpointModel.name == name)
        )
        return result.scalar_one_or_none()

    async def set(self, name: str, block_number: int) -> None:
        await self.session.execute(
            insert_ignoring_conflicts(self.session, ListenerCheckpointModel, ["name"])
            .values(name=name, block_number=block_number)
        )
        await self.session.execute(
            update(ListenerCheckpointModel)
            .where(ListenerCheckpointModel.name == name)
            .values(block_number=block_number, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )


class SessionRepository(ISessionRepository):
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, session: Session) -> Session:
        db_session = SessionModel(
            token=session.token,
            account_id=normalize_address(session.account_id),
            expires_at=session.expires_at
        )
        self.session.add(db_session)
        await self.session.flush()

        return session

    async def get_active(self, token: str, now: datetime) -> Optional[Session]:
        result = await self.session.execute(
            select(SessionModel).where(
                SessionModel.token == token,
                SessionModel.expires_at > now
            )
        )
        db_session = result.scalar_one_or_none()

        if not db_session:
            return None

        return Session(
            token=db_session.token,
            account_id=db_session.account_id,
            expires_at=db_session.expires_at
        )
