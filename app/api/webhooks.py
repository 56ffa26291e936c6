import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from api.deps import get_db
from services.exceptions import InvalidWebhookPayload, SignatureInvalid
from webhooks.registry import get_receiver

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


async def raw_body(request: Request) -> bytes:
    return await request.body()


@router.post("/{provider}")
def receive(provider: str, request: Request, body: bytes = Depends(raw_body), db: Session = Depends(get_db)):
    receiver = get_receiver(provider)
    if receiver is None:
        raise HTTPException(status_code=404, detail="Unknown provider")

    signature = request.headers.get(receiver.signature_header)
    try:
        return receiver.handle(db, body, signature)
    except SignatureInvalid:
        # Stripe documents 400 for signature failures
        raise HTTPException(status_code=400 if provider == "stripe" else 401, detail="Invalid signature")
    except InvalidWebhookPayload as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception:
        logger.exception("Unhandled error processing %s webhook", provider)
        db.rollback()
        raise HTTPException(status_code=500, detail="Webhook processing failed")
