from abc import ABC, abstractmethod
from typing import Optional, List, Protocol
from decimal import Decimal
from datetime import datetime

from domain.entities import Account, Service, Transaction, DepositEvent, Session


class IAccountRepository(ABC):
    @abstractmethod
    async def get(self, account_id: str) -> Optional[Account]:
        pass

    @abstractmethod
    async def debit(self, account_id: str, amount: Decimal) -> Optional[Account]:
        """Conditionally decrement; None when funds are insufficient."""
        pass

    @abstractmethod
    async def credit(self, account_id: str, amount: Decimal) -> Account:
        pass


class IServiceRepository(ABC):
    @abstractmethod
    async def create(self, service: Service) -> Service:
        pass

    @abstractmethod
    async def get_by_id(self, service_id: str) -> Optional[Service]:
        pass

    @abstractmethod
    async def list_active(self) -> List[Service]:
        pass

    @abstractmethod
    async def increment_unpaid(
        self,
        service_id: str,
        amount: Decimal
    ) -> Optional[Service]:
        pass

    @abstractmethod
    async def decrement_unpaid(
        self,
        service_id: str,
        amount: Decimal
    ) -> Optional[Service]:
        pass


class ITransactionRepository(ABC):
    @abstractmethod
    async def create(self, transaction: Transaction) -> Transaction:
        pass

    @abstractmethod
    async def get(self, transaction_id: str) -> Optional[Transaction]:
        pass

    @abstractmethod
    async def list(
        self,
        buyer_account_id: Optional[str] = None,
        seller_account_id: Optional[str] = None,
        service_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[Transaction]:
        pass


class IDepositRepository(ABC):
    @abstractmethod
    async def record_if_new(self, event: DepositEvent, amount: Decimal) -> bool:
        """Insert the deposit record; False when it was already recorded."""
        pass

    @abstractmethod
    async def exists(self, tx_hash: str, log_index: int = -1) -> bool:
        pass


class ICheckpointRepository(ABC):
    @abstractmethod
    async def get(self, name: str) -> Optional[int]:
        pass

    @abstractmethod
    async def set(self, name: str, block_number: int) -> None:
        pass


class ISessionRepository(ABC):
    @abstractmethod
    async def create(self, session: Session) -> Session:
        pass

    @abstractmethod
    async def get_active(self, token: str, now: datetime) -> Optional[Session]:
        pass


class IUnitOfWork(Protocol):
    async def commit(self) -> None:
        ...

    async def rollback(self) -> None:
        ...
