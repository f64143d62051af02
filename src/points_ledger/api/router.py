from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse

from ..engine import PointsEngine
from ..exceptions import AccountNotFound, ConflictError, StorageError, TransactionNotFound
from ..models.api_models import (
    BalanceResponse,
    CreditResponse,
    DebitRequest,
    DebitResponse,
    InsufficientFundsResponse,
    PackageResponse,
    RefundRequest,
    SubscriptionResponse,
    WebhookAck,
)
from ..models.transaction import InsufficientFunds

router = APIRouter()


def get_engine(request: Request) -> PointsEngine:
    return request.app.state.engine


@router.get("/health", tags=["health"])
async def health() -> dict:
    return {"status": "ok"}


@router.post("/webhooks/payments", response_model=WebhookAck, tags=["webhooks"])
async def payment_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    engine: PointsEngine = Depends(get_engine),
) -> JSONResponse:
    # Signature verification needs the exact raw body.
    payload = await request.body()
    result = await engine.webhooks.ingest(payload, stripe_signature)
    ack = WebhookAck(received=result.acknowledged, outcome=result.outcome.value, detail=result.detail)
    return JSONResponse(status_code=result.http_status, content=ack.model_dump())


@router.post(
    "/points/debit",
    response_model=DebitResponse,
    responses={
        402: {"model": InsufficientFundsResponse},
        409: {"description": "Idempotency key reused with different parameters"},
        503: {"description": "Ledger temporarily unavailable"},
    },
    tags=["points"],
)
async def debit_points(payload: DebitRequest, engine: PointsEngine = Depends(get_engine)):
    try:
        result = await engine.authority.debit(
            account_id=payload.account_id,
            amount=payload.amount,
            kind=payload.kind,
            description=payload.description,
            idempotency_key=payload.idempotency_key,
            metadata=payload.metadata,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except ConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except StorageError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if isinstance(result, InsufficientFunds):
        body = InsufficientFundsResponse(required=result.required, available=result.available)
        return JSONResponse(status_code=status.HTTP_402_PAYMENT_REQUIRED, content=body.model_dump())

    balance = await engine.ledger_service.balance_of(payload.account_id)
    return DebitResponse(transaction=result.transaction, replayed=result.replayed, balance=balance)


@router.post("/points/refund", response_model=CreditResponse, tags=["points"])
async def refund_points(payload: RefundRequest, engine: PointsEngine = Depends(get_engine)) -> CreditResponse:
    try:
        result = await engine.authority.refund(
            payload.account_id,
            payload.transaction_id,
            reason=payload.reason or "",
        )
    except TransactionNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except ConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except StorageError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    balance = await engine.ledger_service.balance_of(payload.account_id)
    return CreditResponse(transaction=result.transaction, duplicate=result.duplicate, balance=balance)


@router.get("/points/{account_id}", response_model=BalanceResponse, tags=["points"])
async def get_balance(
    account_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    cursor: Optional[str] = None,
    engine: PointsEngine = Depends(get_engine),
) -> BalanceResponse:
    try:
        statement = await engine.ledger_service.statement(account_id, limit=limit, cursor=cursor)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return BalanceResponse(
        account_id=statement.account_id,
        balance=statement.balance,
        transactions=statement.transactions,
        next_cursor=statement.next_cursor,
    )


@router.get("/subscriptions/{account_id}", response_model=SubscriptionResponse, tags=["subscriptions"])
async def get_subscription(account_id: str, engine: PointsEngine = Depends(get_engine)) -> SubscriptionResponse:
    try:
        view = await engine.subscriptions.get_status(account_id)
    except AccountNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return SubscriptionResponse(
        account_id=view.account_id,
        plan=view.plan,
        status=view.status,
        expires_at=view.expires_at,
        days_remaining=view.days_remaining,
        is_active=view.is_active,
    )


@router.get("/packages", response_model=List[PackageResponse], tags=["packages"])
async def list_packages(engine: PointsEngine = Depends(get_engine)) -> List[PackageResponse]:
    return [
        PackageResponse(
            id=p.id,
            name=p.name,
            points=p.points,
            price_cents=p.price_cents,
            currency=p.currency,
            points_per_dollar=p.points_per_dollar,
        )
        for p in engine.catalog.active()
    ]
