from pydantic import BaseModel, ConfigDict, Field, field_validator
from decimal import Decimal, InvalidOperation
from typing import Optional, List


class QueryPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    prompt: str = Field(..., min_length=1)


class QueryRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    service_id: str = Field(..., min_length=1, max_length=36, alias="serviceId")
    payload: QueryPayload


class PrepareRequest(BaseModel):
    prompt: str = Field(..., min_length=1)


class PrepareResponse(BaseModel):
    service_id: str
    name: str
    description: str
    price: str


class RegisterServiceRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: str = Field("", max_length=4000)
    keywords: List[str] = Field(default_factory=list)
    endpoint_url: str = Field(..., min_length=1, max_length=2048)
    price_per_query: str = Field(..., description="Price per query as string")
    payout_address: Optional[str] = Field(None, max_length=128)

    @field_validator('price_per_query')
    @classmethod
    def validate_price(cls, v: str) -> str:
        try:
            price = Decimal(v)
        except (InvalidOperation, TypeError):
            raise ValueError("Invalid price format")
        if not price.is_finite() or price < 0:
            raise ValueError("Price per query must be a non-negative number")
        return v


class ServiceResponse(BaseModel):
    service_id: str
    owner_account_id: str
    name: str
    description: str
    keywords: List[str]
    endpoint_url: str
    price_per_query: str
    payout_address: Optional[str] = None
    unpaid_balance: str
    is_active: bool


class ServiceListResponse(BaseModel):
    services: List[ServiceResponse]
    total: int


class BalanceResponse(BaseModel):
    account_id: str
    balance: str


class ErrorResponse(BaseModel):
    error: str
    detail: Optional[str] = None


class TransactionListItem(BaseModel):
    transaction_id: str
    kind: str
    service_id: str
    seller_account_id: str
    buyer_account_id: str
    amount: str
    refund_of: Optional[str] = None
    created_at: str


class TransactionListResponse(BaseModel):
    transactions: List[TransactionListItem]
    total: int
