from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from infrastructure.database import get_db
from application.gateways import ISellerGateway
from domain.services import ServiceResolver
from domain.exceptions import (
    UnauthorizedError,
    ServiceNotFoundError,
    InsufficientFundsError,
    LedgerInconsistencyError,
    UpstreamUnavailableError,
    UpstreamTimeoutError,
    InvalidServiceError
)
from api.schemas import (
    QueryRequest,
    PrepareRequest,
    PrepareResponse,
    RegisterServiceRequest,
    ServiceResponse,
    ServiceListResponse,
    BalanceResponse,
    ErrorResponse,
    TransactionListResponse,
    TransactionListItem
)
from api.dependencies import (
    get_session_token,
    get_seller_gateway,
    get_service_resolver,
    get_authenticate_use_case,
    get_get_balance_use_case,
    get_register_service_use_case,
    get_list_services_use_case,
    get_get_service_use_case,
    get_prepare_query_use_case,
    get_list_transactions_use_case,
    get_handle_query_use_case
)
from application.use_cases import service_to_dict

logger = logging.getLogger(__name__)

router = APIRouter()

NO_STORE = "no-store, no-cache, must-revalidate"


async def _require_account(session: AsyncSession, token: Optional[str]) -> str:
    use_case = await get_authenticate_use_case(session)
    try:
        return await use_case.execute(token)
    except UnauthorizedError as e:
        raise HTTPException(status_code=401, detail=str(e))


@router.post(
    "/query",
    responses={
        401: {"model": ErrorResponse},
        402: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
        504: {"model": ErrorResponse}
    },
    description=(
        "Charges the service price and forwards the prompt to the seller. "
        "Errors before the charge are free. Once charged, the query is billed "
        "even if the seller times out or fails."
    )
)
async def handle_query(
    request: QueryRequest,
    token: Optional[str] = Depends(get_session_token),
    seller_gateway: ISellerGateway = Depends(get_seller_gateway),
    session: AsyncSession = Depends(get_db)
):
    try:
        use_case = await get_handle_query_use_case(session, seller_gateway)
        result = await use_case.execute(
            session_token=token,
            service_id=request.service_id,
            payload=request.payload.model_dump()
        )
    except UnauthorizedError as e:
        raise HTTPException(status_code=401, detail=str(e))
    except ServiceNotFoundError as e:
        logger.warning(f"Service not found: {request.service_id}")
        raise HTTPException(status_code=404, detail=str(e))
    except InsufficientFundsError as e:
        raise HTTPException(status_code=402, detail=str(e))
    except LedgerInconsistencyError as e:
        logger.error(f"Ledger inconsistency for service {request.service_id}: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")
    except UpstreamTimeoutError as e:
        raise HTTPException(status_code=504, detail=str(e))
    except UpstreamUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except Exception as e:
        logger.error(f"Error handling query: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")

    return StreamingResponse(
        result.body,
        status_code=result.status_code,
        headers=result.headers
    )


@router.post(
    "/chat/prepare",
    response_model=PrepareResponse,
    responses={
        401: {"model": ErrorResponse},
        404: {"model": ErrorResponse}
    }
)
async def prepare_query(
    request: PrepareRequest,
    token: Optional[str] = Depends(get_session_token),
    resolver: ServiceResolver = Depends(get_service_resolver),
    session: AsyncSession = Depends(get_db)
):
    await _require_account(session, token)
    try:
        use_case = await get_prepare_query_use_case(session, resolver)
        result = await use_case.execute(request.prompt)
        return PrepareResponse(**result)

    except ServiceNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error preparing query: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/services", response_model=ServiceListResponse)
async def list_services(
    response: Response,
    session: AsyncSession = Depends(get_db)
):
    response.headers["Cache-Control"] = NO_STORE
    try:
        use_case = await get_list_services_use_case(session)
        services = await use_case.execute()
        return ServiceListResponse(
            services=[ServiceResponse(**s) for s in services],
            total=len(services)
        )

    except Exception as e:
        logger.error(f"Error listing services: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=500,
            detail="Failed to fetch marketplace services",
            headers={"Cache-Control": NO_STORE}
        )


@router.get(
    "/services/{service_id}",
    response_model=ServiceResponse,
    responses={404: {"model": ErrorResponse}}
)
async def get_service(
    service_id: str,
    response: Response,
    session: AsyncSession = Depends(get_db)
):
    response.headers["Cache-Control"] = NO_STORE
    try:
        use_case = await get_get_service_use_case(session)
        result = await use_case.execute(service_id)
        return ServiceResponse(**result)

    except ServiceNotFoundError as e:
        logger.warning(f"Service not found: {service_id}")
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Error getting service: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post(
    "/services",
    response_model=ServiceResponse,
    status_code=201,
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse}
    }
)
async def register_service(
    request: RegisterServiceRequest,
    token: Optional[str] = Depends(get_session_token),
    session: AsyncSession = Depends(get_db)
):
    owner_id = await _require_account(session, token)
    try:
        use_case = await get_register_service_use_case(session)
        service = await use_case.execute(
            owner_account_id=owner_id,
            name=request.name,
            description=request.description,
            keywords=request.keywords,
            endpoint_url=request.endpoint_url,
            price_per_query=request.price_per_query,
            payout_address=request.payout_address
        )
        return ServiceResponse(**service_to_dict(service))

    except InvalidServiceError as e:
        logger.warning(f"Invalid service registration: {str(e)}")
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error registering service: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get(
    "/account/balance",
    response_model=BalanceResponse,
    responses={401: {"model": ErrorResponse}}
)
async def get_balance(
    token: Optional[str] = Depends(get_session_token),
    session: AsyncSession = Depends(get_db)
):
    account_id = await _require_account(session, token)
    try:
        use_case = await get_get_balance_use_case(session)
        result = await use_case.execute(account_id)
        return BalanceResponse(**result)

    except Exception as e:
        logger.error(f"Error getting balance: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get(
    "/transactions",
    response_model=TransactionListResponse,
    responses={401: {"model": ErrorResponse}}
)
async def list_transactions(
    as_seller: bool = Query(False, description="List sales instead of purchases"),
    service_id: str = Query(None, description="Filter by service"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum results"),
    offset: int = Query(0, ge=0, description="Pagination offset"),
    token: Optional[str] = Depends(get_session_token),
    session: AsyncSession = Depends(get_db)
):
    account_id = await _require_account(session, token)
    try:
        use_case = await get_list_transactions_use_case(session)
        transactions = await use_case.execute(
            account_id=account_id,
            as_seller=as_seller,
            service_id=service_id,
            limit=limit,
            offset=offset
        )

        return TransactionListResponse(
            transactions=[TransactionListItem(**t) for t in transactions],
            total=len(transactions)
        )

    except Exception as e:
        logger.error(f"Error listing transactions: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")
