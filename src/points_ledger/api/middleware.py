"""
Starlette middleware that charges points for billable routes.

Flow:
  1. Before request: debit the route's cost (per-action rate times the
     X-Billable-Quantity header) under the caller's Idempotency-Key.
  2. Request is executed only if the debit succeeded; insufficient points
     answer 402 without reaching the route.
  3. A replayed Idempotency-Key answers 409 and never reaches the route;
     each key pays for exactly one execution.
  4. After response: a route that raised or answered 5xx gets the debit
     refunded, so failed work is never charged.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from ..exceptions import ConflictError, StorageError
from ..models.api_models import InsufficientFundsResponse
from ..models.transaction import InsufficientFunds, Transaction, TransactionKind
from ..services.balance_authority import BalanceAuthority

logger = logging.getLogger(__name__)


class PointsDebitMiddleware(BaseHTTPMiddleware):
    """
    Debit-before-work middleware.

    ``billable_routes`` maps a path prefix to the action kind it bills. The
    authority is taken from ``request.app.state.engine`` at dispatch time.
    """

    def __init__(
        self,
        app: Any,
        billable_routes: Mapping[str, TransactionKind],
        *,
        account_header: str = "X-Account-Id",
        idempotency_header: str = "Idempotency-Key",
        quantity_header: str = "X-Billable-Quantity",
    ) -> None:
        super().__init__(app)
        self.billable_routes = {prefix.rstrip("/"): kind for prefix, kind in billable_routes.items()}
        self.account_header = account_header
        self.idempotency_header = idempotency_header
        self.quantity_header = quantity_header

    def _kind_for(self, path: str) -> TransactionKind | None:
        for prefix, kind in self.billable_routes.items():
            if path == prefix or path.startswith(prefix + "/"):
                return kind
        return None

    async def dispatch(self, request: Request, call_next: Callable[[Request], Any]) -> Response:
        kind = self._kind_for(request.url.path)
        if kind is None:
            return await call_next(request)

        account_id = request.headers.get(self.account_header)
        if not account_id:
            return JSONResponse(
                status_code=401,
                content={"detail": f"Missing account identification ({self.account_header} header)."},
            )
        idempotency_key = request.headers.get(self.idempotency_header)
        if not idempotency_key:
            return JSONResponse(
                status_code=400,
                content={"detail": f"Billable requests require an {self.idempotency_header} header."},
            )
        try:
            quantity = int(request.headers.get(self.quantity_header, "1"))
        except ValueError:
            quantity = 0
        if quantity < 1:
            return JSONResponse(
                status_code=400,
                content={"detail": f"{self.quantity_header} must be a positive integer."},
            )

        authority: BalanceAuthority = request.app.state.engine.authority
        amount = authority.cost_of(kind, quantity)
        try:
            result = await authority.debit(
                account_id=account_id,
                amount=amount,
                kind=kind,
                description=f"{request.method} {request.url.path}",
                idempotency_key=idempotency_key,
                metadata={"path": request.url.path, "quantity": quantity},
                correlation_id=request.headers.get("X-Request-Id"),
            )
        except ConflictError as exc:
            return JSONResponse(status_code=409, content={"detail": str(exc)})
        except StorageError as exc:
            logger.error("Debit failed on %s: %s", request.url.path, exc, extra={"account_id": account_id})
            return JSONResponse(status_code=503, content={"detail": "Ledger temporarily unavailable."})

        if isinstance(result, InsufficientFunds):
            body = InsufficientFundsResponse(required=result.required, available=result.available)
            return JSONResponse(status_code=402, content=body.model_dump())

        if result.replayed:
            logger.info(
                "Rejected replay of %s on %s",
                idempotency_key,
                request.url.path,
                extra={"account_id": account_id, "transaction_id": result.transaction.id},
            )
            return JSONResponse(
                status_code=409,
                content={"detail": "Idempotency key was already used for a billable request; use a new key."},
            )

        tx = result.transaction
        request.state.points_transaction = tx
        try:
            response = await call_next(request)
        except Exception:
            try:
                await self._refund(authority, tx, "billable request raised")
            except Exception:
                logger.exception("Refund of %s failed", tx.id, extra={"account_id": tx.account_id})
            raise

        if response.status_code >= 500:
            await self._refund(authority, tx, f"billable request failed with {response.status_code}")
            return response

        response.headers["X-Points-Debited"] = str(amount)
        return response

    @staticmethod
    async def _refund(authority: BalanceAuthority, tx: Transaction, reason: str) -> None:
        logger.warning("Refunding %s on %s: %s", tx.id, tx.account_id, reason)
        await authority.refund(tx.account_id, tx.id, reason=reason, correlation_id=tx.external_ref)
