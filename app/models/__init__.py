from models.orm_user import UserEntity
from models.orm_plan import SubscriptionPlanEntity
from models.orm_subscription import UserSubscriptionEntity
from models.orm_subscription_history import UserSubscriptionHistoryEntity
from models.orm_payment_method import PaymentMethodEntity
from models.orm_pending_signup import PendingSignupEntity
from models.orm_app_setting import AppSettingEntity

__all__ = [
    "UserEntity",
    "SubscriptionPlanEntity",
    "UserSubscriptionEntity",
    "UserSubscriptionHistoryEntity",
    "PaymentMethodEntity",
    "PendingSignupEntity",
    "AppSettingEntity",
]
