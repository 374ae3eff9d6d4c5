from typing import Optional

from fastapi import Cookie, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from infrastructure.repositories import (
    AccountRepository,
    ServiceRepository,
    TransactionRepository,
    SessionRepository
)
from infrastructure.seller_gateway import HttpSellerGateway
from infrastructure.service_router import ClassifierServiceResolver
from application.gateways import ISellerGateway
from domain.services import KeywordServiceResolver, ServiceResolver
from config import settings
from application.use_cases import (
    AuthenticateUseCase,
    GetBalanceUseCase,
    RegisterServiceUseCase,
    ListServicesUseCase,
    GetServiceUseCase,
    PrepareQueryUseCase,
    ListTransactionsUseCase,
    HandleQueryUseCase
)


def get_session_token(
    authorization: Optional[str] = Header(None),
    session_cookie: Optional[str] = Cookie(None, alias=settings.session_cookie_name)
) -> Optional[str]:
    if authorization:
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() == "bearer" and token.strip():
            return token.strip()
    return session_cookie


def get_seller_gateway(request: Request) -> ISellerGateway:
    return HttpSellerGateway(
        request.app.state.http_client,
        timeout_seconds=settings.seller_timeout_seconds
    )


def get_service_resolver(request: Request) -> ServiceResolver:
    if settings.service_resolver == "classifier":
        return ClassifierServiceResolver(
            request.app.state.http_client,
            settings.router_worker_url,
            timeout_seconds=settings.router_timeout_seconds
        )
    return KeywordServiceResolver()


async def get_authenticate_use_case(
    session: AsyncSession
) -> AuthenticateUseCase:
    return AuthenticateUseCase(SessionRepository(session))


async def get_get_balance_use_case(
    session: AsyncSession
) -> GetBalanceUseCase:
    return GetBalanceUseCase(AccountRepository(session))


async def get_register_service_use_case(
    session: AsyncSession
) -> RegisterServiceUseCase:
    return RegisterServiceUseCase(ServiceRepository(session))


async def get_list_services_use_case(
    session: AsyncSession
) -> ListServicesUseCase:
    return ListServicesUseCase(ServiceRepository(session))


async def get_get_service_use_case(
    session: AsyncSession
) -> GetServiceUseCase:
    return GetServiceUseCase(ServiceRepository(session))


async def get_prepare_query_use_case(
    session: AsyncSession,
    resolver: ServiceResolver
) -> PrepareQueryUseCase:
    return PrepareQueryUseCase(ServiceRepository(session), resolver)


async def get_list_transactions_use_case(
    session: AsyncSession
) -> ListTransactionsUseCase:
    return ListTransactionsUseCase(TransactionRepository(session))


async def get_handle_query_use_case(
    session: AsyncSession,
    seller_gateway: ISellerGateway
) -> HandleQueryUseCase:
    return HandleQueryUseCase(
        AuthenticateUseCase(SessionRepository(session)),
        ServiceRepository(session),
        AccountRepository(session),
        TransactionRepository(session),
        seller_gateway,
        session,
        refund_on_forward_failure=settings.refund_on_forward_failure
    )
