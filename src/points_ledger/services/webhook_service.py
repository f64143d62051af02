from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterator, Optional, Tuple

import stripe

from ..config import Settings, get_settings
from ..db.base import BaseDBManager
from ..exceptions import BadSignature, ConflictError, MalformedEvent
from ..logging.ledger_logger import LedgerLogger
from ..models.account import SubscriptionStatus
from ..models.transaction import TransactionKind
from ..models.webhook import EventCategory, IngestOutcome, IngestResult, ProviderEvent
from .balance_authority import BalanceAuthority
from .catalog import PackageCatalog
from .idempotency import IdempotencyGuard
from .subscription_service import SubscriptionService, map_provider_status

logger = logging.getLogger(__name__)

ACCOUNT_METADATA_KEYS = ("account_id", "userId", "user_id")
PAID_STATUSES = frozenset({"paid", "no_payment_required"})

HandlerResult = Tuple[IngestOutcome, Optional[str]]
Handler = Callable[[ProviderEvent, str], Awaitable[HandlerResult]]


def _ref(value: Any) -> Optional[str]:
    """Provider references arrive either as an id string or as an expanded object."""
    if isinstance(value, str) and value:
        return value
    if isinstance(value, dict) and isinstance(value.get("id"), str):
        return value["id"]
    return None


def _timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as exc:
        raise MalformedEvent(f"timestamp {value!r} is out of range") from exc


def checkout_ref(session_id: str) -> str:
    return f"checkout:{session_id}"


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _dig(obj: Dict[str, Any], *path: Any) -> Any:
    current: Any = obj
    for key in path:
        if isinstance(key, int):
            if not isinstance(current, list) or len(current) <= key:
                return None
        elif not isinstance(current, dict):
            return None
        current = current[key] if isinstance(key, int) else current.get(key)
    return current


def _metadata_sources(obj: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
    for path in (
        ("metadata",),
        ("subscription_details", "metadata"),
        ("parent", "subscription_details", "metadata"),
    ):
        metadata = _dig(obj, *path)
        if isinstance(metadata, dict):
            yield metadata


class WebhookIngestionService:
    """
    Verify, deduplicate and apply payment provider webhooks.

    Each delivery is handled as a single unit of work: the event id claim,
    the ledger credit or status change, and the audit entries commit or roll
    back together. Outcomes map onto HTTP statuses so the provider retries
    only what can succeed later.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        authority: BalanceAuthority,
        subscriptions: SubscriptionService,
        catalog: PackageCatalog,
        guard: Optional[IdempotencyGuard] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._authority = authority
        self._subscriptions = subscriptions
        self._catalog = catalog
        self._guard = guard or IdempotencyGuard(db)
        self._settings = settings or get_settings()
        self._handlers: Dict[EventCategory, Handler] = {
            EventCategory.CHECKOUT_COMPLETED: self._handle_checkout_completed,
            EventCategory.SUBSCRIPTION_UPDATED: self._handle_subscription_updated,
            EventCategory.SUBSCRIPTION_DELETED: self._handle_subscription_deleted,
            EventCategory.INVOICE_PAID: self._handle_invoice_paid,
            EventCategory.INVOICE_FAILED: self._handle_invoice_failed,
        }

    async def ingest(self, payload: bytes, signature_header: Optional[str]) -> IngestResult:
        if not self._settings.stripe_webhook_secret:
            logger.error("Webhook secret is not configured; asking the provider to retry")
            return IngestResult(outcome=IngestOutcome.RETRY, detail="webhook secret not configured")

        try:
            body = payload.decode("utf-8")
            self._verify(body, signature_header)
            event = ProviderEvent.parse_payload(body)
        except UnicodeDecodeError:
            return IngestResult(outcome=IngestOutcome.REJECTED, detail="payload is not utf-8")
        except BadSignature as exc:
            logger.warning("Rejected webhook: %s", exc)
            return IngestResult(outcome=IngestOutcome.REJECTED, detail="invalid signature")
        except MalformedEvent as exc:
            logger.warning("Rejected webhook: %s", exc)
            return IngestResult(outcome=IngestOutcome.REJECTED, detail=str(exc))

        try:
            return await asyncio.wait_for(self._process(event), timeout=self._settings.webhook_timeout_seconds)
        except asyncio.TimeoutError:
            logger.error("Webhook %s timed out", event.id, extra={"event_type": event.type})
            return self._result(event, IngestOutcome.RETRY, detail="timeout")
        except Exception:
            logger.exception("Webhook %s failed", event.id, extra={"event_type": event.type})
            return self._result(event, IngestOutcome.RETRY, detail="handler error")

    def _verify(self, payload: str, signature_header: Optional[str]) -> None:
        if not signature_header:
            raise BadSignature("missing signature header")
        try:
            stripe.WebhookSignature.verify_header(
                payload,
                signature_header,
                self._settings.stripe_webhook_secret,
                tolerance=self._settings.webhook_tolerance_seconds,
            )
        except stripe.SignatureVerificationError as exc:
            raise BadSignature(str(exc)) from exc

    async def _process(self, event: ProviderEvent) -> IngestResult:
        if event.category == EventCategory.UNKNOWN:
            async with self._db.transaction():
                claim = await self._guard.claim(event.id, event_type=event.type)
                if not claim.acquired:
                    return self._result(event, IngestOutcome.DUPLICATE)
                await self._guard.release(event.id, IngestOutcome.IGNORED.value)
            logger.debug("Ignored webhook %s of type %s", event.id, event.type)
            return self._result(event, IngestOutcome.IGNORED, detail="unhandled event type")

        account_id = await self._resolve_account(event)
        if account_id is None:
            return await self._drop_unroutable(event)

        async with self._db.transaction(account_id):
            claim = await self._guard.claim(event.id, event_type=event.type, account_id=account_id)
            if not claim.acquired:
                logger.info("Duplicate webhook %s", event.id, extra={"account_id": account_id})
                return self._result(event, IngestOutcome.DUPLICATE, account_id=account_id)

            try:
                outcome, detail = await self._handlers[event.category](event, account_id)
            except (MalformedEvent, ConflictError) as exc:
                logger.error(
                    "Dropped webhook %s: %s",
                    event.id,
                    exc,
                    extra={"account_id": account_id, "event_type": event.type},
                )
                outcome, detail = IngestOutcome.DROPPED, str(exc)

            await self._guard.release(event.id, f"{outcome.value}: {detail}" if detail else outcome.value)
            await self._ledger.log_webhook(
                message="Webhook handled",
                details={"event_type": event.type, "outcome": outcome.value, "detail": detail},
                account_id=account_id,
                correlation_id=event.id,
            )

        logger.info("Webhook %s %s", event.id, outcome.value, extra={"account_id": account_id})
        return self._result(event, outcome, detail=detail, account_id=account_id)

    async def _drop_unroutable(self, event: ProviderEvent) -> IngestResult:
        async with self._db.transaction():
            claim = await self._guard.claim(event.id, event_type=event.type)
            if not claim.acquired:
                return self._result(event, IngestOutcome.DUPLICATE)
            await self._guard.release(event.id, f"{IngestOutcome.DROPPED.value}: no account")
            await self._ledger.log_error(
                message="Webhook has no resolvable account",
                details={"event_type": event.type},
                correlation_id=event.id,
            )
        logger.error(
            "Webhook %s (%s) has no resolvable account; acknowledged without effect",
            event.id,
            event.type,
        )
        return self._result(event, IngestOutcome.DROPPED, detail="no account")

    async def _resolve_account(self, event: ProviderEvent) -> Optional[str]:
        obj = event.object
        for metadata in _metadata_sources(obj):
            for key in ACCOUNT_METADATA_KEYS:
                value = metadata.get(key)
                if isinstance(value, str) and value:
                    return value

        if event.category == EventCategory.CHECKOUT_COMPLETED:
            reference = obj.get("client_reference_id")
            if isinstance(reference, str) and reference:
                return reference

        customer_ref = _ref(obj.get("customer"))
        if customer_ref:
            account = await self._db.find_account_by_customer_ref(customer_ref)
            if account is not None:
                return account.id
        return None

    # Handlers
    async def _handle_checkout_completed(self, event: ProviderEvent, account_id: str) -> HandlerResult:
        session = event.object
        session_id = _ref(session)
        if session_id is None:
            raise MalformedEvent("checkout session without id")

        customer_ref = _ref(session.get("customer"))
        if customer_ref:
            await self._subscriptions.record_customer(
                account_id, customer_ref, subscription_ref=_ref(session.get("subscription"))
            )
        else:
            await self._subscriptions.open_account(account_id)

        mode = session.get("mode", "payment")
        if mode != "payment":
            # Subscription checkouts are settled by the subscription and invoice events.
            return IngestOutcome.PROCESSED, f"{mode} checkout"

        payment_status = session.get("payment_status", "paid")
        if payment_status not in PAID_STATUSES:
            return IngestOutcome.IGNORED, f"payment status {payment_status}"

        metadata = session.get("metadata")
        if not isinstance(metadata, dict):
            metadata = {}
        package = self._catalog.resolve(
            package_id=metadata.get("package_id") or metadata.get("packageId"),
            price_ref=metadata.get("price_id") or metadata.get("priceId"),
        )
        metadata_points = _as_int(metadata.get("points"))
        if package is not None:
            points = package.points
            if metadata_points is not None and metadata_points != points:
                logger.warning(
                    "Checkout %s metadata says %s points, catalog package %s has %s",
                    session_id,
                    metadata_points,
                    package.id,
                    points,
                )
        elif metadata_points is not None and metadata_points > 0:
            points = metadata_points
        else:
            raise MalformedEvent(f"checkout {session_id} does not name a known package")

        result = await self._authority.credit(
            account_id,
            points,
            kind=TransactionKind.PURCHASE,
            description=f"Purchased {package.name if package else points} points",
            external_ref=checkout_ref(session_id),
            metadata={
                "package_id": package.id if package else None,
                "amount_total": session.get("amount_total"),
                "currency": session.get("currency"),
                "event_id": event.id,
            },
            correlation_id=event.id,
        )
        return IngestOutcome.PROCESSED, "already credited" if result.duplicate else None

    async def _handle_subscription_updated(self, event: ProviderEvent, account_id: str) -> HandlerResult:
        subscription = event.object
        provider_status = subscription.get("status")
        if not isinstance(provider_status, str):
            raise MalformedEvent("subscription event without status")

        period_end = subscription.get("current_period_end")
        if period_end is None:
            period_end = _dig(subscription, "items", "data", 0, "current_period_end")

        result = await self._subscriptions.apply_provider_status(
            account_id,
            map_provider_status(provider_status),
            event_at=event.created,
            expires_at=_timestamp(period_end),
            customer_ref=_ref(subscription.get("customer")),
            subscription_ref=_ref(subscription),
            correlation_id=event.id,
        )
        return IngestOutcome.PROCESSED, None if result.applied else result.reason

    async def _handle_subscription_deleted(self, event: ProviderEvent, account_id: str) -> HandlerResult:
        subscription = event.object
        result = await self._subscriptions.apply_provider_status(
            account_id,
            SubscriptionStatus.CANCELLED,
            event_at=event.created,
            customer_ref=_ref(subscription.get("customer")),
            subscription_ref=_ref(subscription),
            correlation_id=event.id,
        )
        return IngestOutcome.PROCESSED, None if result.applied else result.reason

    async def _handle_invoice_paid(self, event: ProviderEvent, account_id: str) -> HandlerResult:
        return await self._apply_invoice(event, account_id, SubscriptionStatus.ACTIVE)

    async def _handle_invoice_failed(self, event: ProviderEvent, account_id: str) -> HandlerResult:
        return await self._apply_invoice(event, account_id, SubscriptionStatus.PAST_DUE)

    async def _apply_invoice(
        self,
        event: ProviderEvent,
        account_id: str,
        status: SubscriptionStatus,
    ) -> HandlerResult:
        invoice = event.object
        subscription_ref = _ref(invoice.get("subscription")) or _ref(
            _dig(invoice, "parent", "subscription_details", "subscription")
        )
        if subscription_ref is None:
            return IngestOutcome.IGNORED, "invoice without subscription"

        expires_at = None
        if status == SubscriptionStatus.ACTIVE:
            expires_at = _timestamp(_dig(invoice, "lines", "data", 0, "period", "end"))

        result = await self._subscriptions.apply_provider_status(
            account_id,
            status,
            event_at=event.created,
            expires_at=expires_at,
            customer_ref=_ref(invoice.get("customer")),
            subscription_ref=subscription_ref,
            correlation_id=event.id,
        )
        return IngestOutcome.PROCESSED, None if result.applied else result.reason

    @staticmethod
    def _result(
        event: ProviderEvent,
        outcome: IngestOutcome,
        detail: Optional[str] = None,
        account_id: Optional[str] = None,
    ) -> IngestResult:
        return IngestResult(
            outcome=outcome,
            event_id=event.id,
            event_type=event.type,
            account_id=account_id,
            detail=detail,
        )
