import logging
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from sqlalchemy.orm import Session

from api.deps import get_db, get_current_user
from models.orm_user import UserEntity
from payments.registry import get_provider
from schemas.payments import (
    CheckoutIn,
    CheckoutOut,
    CurrenciesOut,
    CurrencyOut,
    EstimateOut,
    PaymentMethodIn,
    PaymentMethodOut,
    PaymentMethodsOut,
    VerifyIn,
    VerifyOut,
)
from services import payment_method_service
from services.billing_service import create_checkout, verify_payment
from services.exceptions import (
    ConcurrentUpdate,
    InvalidRequest,
    NotFound,
    PaymentDeclined,
    PaymentProviderError,
    ProviderUnavailable,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])


def _http_error(e: PaymentProviderError, fallback: str) -> HTTPException:
    if isinstance(e, ProviderUnavailable):
        return HTTPException(status_code=503, detail="Payment provider unavailable")
    if isinstance(e, PaymentDeclined):
        return HTTPException(status_code=402, detail="Payment declined")
    if isinstance(e, InvalidRequest) and e.provider is None:
        return HTTPException(status_code=400, detail=str(e))
    return HTTPException(status_code=400, detail=fallback)


@router.post("/checkout", response_model=CheckoutOut, status_code=201)
def checkout(
    data: CheckoutIn,
    idempotency_key: Optional[str] = Header(default=None),
    user: UserEntity = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    metadata = {k: v for k, v in {"phone_number": data.phone_number, "network": data.network}.items() if v}
    try:
        result = create_checkout(
            db,
            user,
            data.provider,
            plan_id=data.plan_id,
            payment_type=data.payment_type,
            pay_currency=data.pay_currency,
            idempotency_key=idempotency_key,
            metadata=metadata,
        )
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PaymentProviderError as e:
        logger.error("Checkout for user %s via %s failed: %s", user.id, data.provider, e)
        raise _http_error(e, "Payment could not be created")

    p = result.payment
    return CheckoutOut(
        subscription_id=result.subscription.id if result.subscription else None,
        pending_signup_id=result.pending_signup.id if result.pending_signup else None,
        provider=result.provider,
        payment_id=p.id,
        status=p.status,
        amount=result.amount,
        currency=result.currency,
        idempotency_key=result.idempotency_key,
        redirect_url=p.redirect_url,
        client_secret=p.client_secret,
        pay_address=p.pay_address,
        pay_amount=p.pay_amount,
        pay_currency=p.pay_currency,
        instructions=p.instructions,
    )


@router.post("/verify", response_model=VerifyOut)
def verify(data: VerifyIn, user: UserEntity = Depends(get_current_user), db: Session = Depends(get_db)):
    try:
        verification, result = verify_payment(db, user, data.provider, data.reference)
    except NotFound:
        raise HTTPException(status_code=404, detail="Payment not found")
    except ConcurrentUpdate:
        raise HTTPException(status_code=409, detail="Subscription changed concurrently, retry")
    except PaymentProviderError as e:
        logger.error("Verification of %s payment %s failed: %s", data.provider, data.reference, e)
        raise _http_error(e, "Payment verification failed")

    return VerifyOut(
        reference=verification.reference,
        status=verification.status,
        subscription_id=result.subscription.id if result else verification.subscription_id,
        applied=bool(result and result.applied),
        outcome=result.outcome if result else None,
    )


@router.get("/nowpayments/estimate", response_model=EstimateOut)
def nowpayments_estimate(
    amount: Decimal = Query(gt=0),
    currency_from: str = Query(default="usd", min_length=2, max_length=10),
    currency_to: str = Query(min_length=2, max_length=10),
    _: UserEntity = Depends(get_current_user),
):
    try:
        est = get_provider("nowpayments").estimate(amount, currency_from, currency_to)
    except PaymentProviderError as e:
        logger.error("NOWPayments estimate %s %s->%s failed: %s", amount, currency_from, currency_to, e)
        raise _http_error(e, "Price estimate failed")
    return EstimateOut(
        amount_from=est.amount_from,
        currency_from=est.currency_from,
        currency_to=est.currency_to,
        estimated_amount=est.estimated_amount,
        rate=est.rate,
    )


@router.get("/nowpayments/currencies", response_model=CurrenciesOut)
def nowpayments_currencies(_: UserEntity = Depends(get_current_user)):
    try:
        currencies = get_provider("nowpayments").currencies()
    except PaymentProviderError as e:
        logger.error("NOWPayments currencies failed: %s", e)
        raise _http_error(e, "Currency list unavailable")
    return CurrenciesOut(currencies=[CurrencyOut(**c) for c in currencies])


@router.get("/methods", response_model=PaymentMethodsOut)
def list_methods(user: UserEntity = Depends(get_current_user), db: Session = Depends(get_db)):
    methods = payment_method_service.list_methods(db, user.id)
    return PaymentMethodsOut(methods=[PaymentMethodOut.model_validate(m) for m in methods])


@router.post("/methods", response_model=PaymentMethodOut, status_code=201)
def add_method(data: PaymentMethodIn, user: UserEntity = Depends(get_current_user), db: Session = Depends(get_db)):
    try:
        method = payment_method_service.add_method(
            db,
            user.id,
            provider=data.provider,
            payment_type=data.payment_type,
            account=data.account,
            display_name=data.display_name,
            make_default=data.make_default,
        )
    except InvalidRequest as e:
        raise HTTPException(status_code=400, detail=str(e))
    return PaymentMethodOut.model_validate(method)


@router.post("/methods/{method_id}/default", response_model=PaymentMethodOut)
def make_default(method_id: int, user: UserEntity = Depends(get_current_user), db: Session = Depends(get_db)):
    try:
        method = payment_method_service.set_default(db, user.id, method_id)
    except NotFound:
        raise HTTPException(status_code=404, detail="Payment method not found")
    return PaymentMethodOut.model_validate(method)


@router.delete("/methods/{method_id}", status_code=204)
def remove_method(method_id: int, user: UserEntity = Depends(get_current_user), db: Session = Depends(get_db)):
    try:
        payment_method_service.remove_method(db, user.id, method_id)
    except NotFound:
        raise HTTPException(status_code=404, detail="Payment method not found")
