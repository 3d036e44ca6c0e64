import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from ...config import get_settings
from ...core.errors import ExternalServiceError
from ...db.session import get_db
from ...services import payment_events
from ...services.payments import gateway
from ...services.payments.gateway import ProcessorError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/webhook")
async def payments_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None),
    db: Session = Depends(get_db),
):
    payload = await request.body()
    gateway_client = gateway.get_gateway(get_settings())
    try:
        event = gateway_client.parse_webhook(payload, stripe_signature)
    except (ProcessorError, ValueError) as exc:
        logger.warning("Rejected payment webhook", extra={"reason": str(exc)})
        raise HTTPException(status_code=400, detail="Invalid webhook") from exc
    try:
        outcome = payment_events.handle_payment_event(db, event)
    except ExternalServiceError as exc:
        raise HTTPException(status_code=502, detail=exc.message) from exc
    return {"status": outcome}
