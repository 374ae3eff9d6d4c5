from sqlalchemy import (
    Column,
    Integer,
    BigInteger,
    String,
    Boolean,
    DateTime,
    Index,
    Text,
    JSON,
    CheckConstraint,
)
from sqlalchemy.sql import func
from infrastructure.database import Base


class AccountModel(Base):
    __tablename__ = "accounts"

    id = Column(String(128), primary_key=True)
    balance_units = Column(BigInteger, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint("balance_units >= 0", name="ck_account_balance_nonneg"),
    )


class ServiceModel(Base):
    __tablename__ = "services"

    id = Column(String(36), primary_key=True)
    owner_account_id = Column(String(128), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=False, default="")
    keywords = Column(JSON, nullable=False, default=list)
    endpoint_url = Column(String(2048), nullable=False)
    price_units = Column(BigInteger, nullable=False)
    payout_address = Column(String(128), nullable=True)
    unpaid_units = Column(BigInteger, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint("price_units >= 0", name="ck_service_price_nonneg"),
        CheckConstraint("unpaid_units >= 0", name="ck_service_unpaid_nonneg"),
        Index('idx_service_active', 'is_active'),
    )


class TransactionModel(Base):
    __tablename__ = "transactions"

    id = Column(String(36), primary_key=True)
    service_id = Column(String(36), nullable=False, index=True)
    seller_account_id = Column(String(128), nullable=False, index=True)
    buyer_account_id = Column(String(128), nullable=False, index=True)
    amount_units = Column(BigInteger, nullable=False)
    kind = Column(String(16), nullable=False, default="charge")
    refund_of = Column(String(36), nullable=True, unique=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint("amount_units >= 0", name="ck_transaction_amount_nonneg"),
        Index('idx_transaction_filters', 'buyer_account_id', 'seller_account_id', 'service_id'),
    )


class DepositModel(Base):
    __tablename__ = "deposits"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tx_hash = Column(String(66), nullable=False)
    log_index = Column(Integer, nullable=False, default=-1)
    from_address = Column(String(128), nullable=False, index=True)
    to_address = Column(String(128), nullable=False)
    amount_units = Column(BigInteger, nullable=False)
    block_number = Column(BigInteger, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index('idx_deposit_tx_log', 'tx_hash', 'log_index', unique=True),
    )


class ListenerCheckpointModel(Base):
    __tablename__ = "listener_checkpoints"

    name = Column(String(64), primary_key=True)
    block_number = Column(BigInteger, nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class SessionModel(Base):
    __tablename__ = "sessions"

    token = Column(String(255), primary_key=True)
    account_id = Column(String(128), nullable=False, index=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
