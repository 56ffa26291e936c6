import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from api.deps import get_db, get_current_user
from schemas.auth import RegisterIn, LoginIn, TokenOut, UserOut
from models.orm_user import UserEntity
from services.auth_service import DuplicateUser, authenticate, create_access_token, register_user
from services.exceptions import PlanNotFound
from services.plan_service import get_plan_by_name
from services.signup_service import start_subscription
from services.subscription_service import get_free_plan

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Auth"])


@router.post("/register", status_code=201)
def register(data: RegisterIn, db: Session = Depends(get_db)):
    if data.plan:
        try:
            plan = get_plan_by_name(db, data.plan)
        except PlanNotFound:
            raise HTTPException(status_code=400, detail=f"Unknown plan '{data.plan}'")
    else:
        plan = get_free_plan(db)

    try:
        user = register_user(
            db,
            username=data.username,
            email=data.email,
            password=data.password,
            first_name=data.first_name,
        )
    except DuplicateUser as e:
        raise HTTPException(status_code=400, detail=str(e))

    subscription_status = None
    if plan is not None:
        sub = start_subscription(db, user.id, plan)
        subscription_status = sub.status
    else:
        logger.warning("No free plan configured, user %s registered without a subscription", user.id)

    return {
        "message": "Registered",
        "user_id": user.id,
        "plan": plan.name if plan else None,
        "subscription_status": subscription_status,
        "payment_required": bool(plan is not None and not plan.is_free),
    }


@router.post("/login", response_model=TokenOut)
def login(data: LoginIn, db: Session = Depends(get_db)):
    user = authenticate(db, data.username, data.password)
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")

    token = create_access_token(user_id=user.id)
    return TokenOut(access_token=token)


@router.get("/me", response_model=UserOut)
def me(user: UserEntity = Depends(get_current_user)):
    return user
