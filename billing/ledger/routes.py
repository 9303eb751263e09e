"""FastAPI routes for transactions and the Paystack webhook."""

from __future__ import annotations

import json
import logging
from typing import Any, List

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from billing.http import state_attr, unwrap
from billing.payments.paystack import verify_webhook_signature
from billing.security.rate_limit import RateLimitExceeded

from .service import TransactionLedger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/billing/transactions", tags=["transactions"])
webhook_router = APIRouter(prefix="/api/v1/billing/webhooks", tags=["webhooks"])

_SIGNATURE_HEADER = "x-paystack-signature"
_SETTLEMENT_EVENTS = {"charge.success", "charge.failed"}


def _get_ledger(request: Request) -> TransactionLedger:
    return state_attr(request, "transaction_ledger")


def _enforce_rate_limit(request: Request) -> None:
    limiter = getattr(request.app.state, "webhook_rate_limiter", None)
    if limiter is None:
        return
    client = request.client.host if request.client else "anonymous"
    try:
        limiter.assert_allow(client)
    except RateLimitExceeded as exc:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="rate_limit_exceeded",
            headers={"Retry-After": str(max(int(exc.retry_after), 1))},
        ) from exc


async def _verified_body(request: Request) -> bytes:
    secret = getattr(request.app.state, "webhook_secret", "")
    if not secret:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="webhook_signature_not_configured")
    signature = request.headers.get(_SIGNATURE_HEADER)
    if not signature:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="missing_signature")
    body = await request.body()
    if not verify_webhook_signature(secret, body, signature):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_signature")
    return body


@router.get("")
async def list_transactions(
    ids: List[str] = Query(default=[]),
    ledger: TransactionLedger = Depends(_get_ledger),
) -> dict[str, Any]:
    return unwrap(await ledger.list_transactions(ids))


@router.get("/{transaction_id}")
async def get_transaction(transaction_id: str, ledger: TransactionLedger = Depends(_get_ledger)) -> dict[str, Any]:
    return unwrap(await ledger.get_transaction(transaction_id))


@router.post("/verify/{reference}")
async def verify_transaction(reference: str, ledger: TransactionLedger = Depends(_get_ledger)) -> dict[str, Any]:
    return unwrap(await ledger.verify_transaction(reference))


@webhook_router.post("/paystack")
async def paystack_webhook(request: Request, ledger: TransactionLedger = Depends(_get_ledger)) -> dict[str, str]:
    _enforce_rate_limit(request)
    body = await _verified_body(request)
    try:
        event = json.loads(body)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid_payload") from exc

    name = event.get("event", "")
    reference = (event.get("data") or {}).get("reference")
    if name not in _SETTLEMENT_EVENTS or not reference:
        logger.info("Ignoring Paystack event", extra={"event": name})
        return {"status": "ignored"}

    result = await ledger.verify_transaction(reference)
    if result.error:
        if result.error_code == "not_found":
            return {"status": "ignored"}
        unwrap(result)
    return {"status": "processed", "reference": reference}
