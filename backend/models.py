from pydantic import BaseModel, EmailStr, Field, ConfigDict, field_validator, model_validator
from typing import Optional, Dict, Any, List, Literal, Union, Annotated
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
import uuid

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class UserRole(str, Enum):
    ROLE_SUBSCRIBER = "ROLE_SUBSCRIBER"
    ROLE_ADMIN = "ROLE_ADMIN"
    ROLE_OWNER = "ROLE_OWNER"
    ROLE_SYSTEM = "ROLE_SYSTEM"  # Gateway webhooks, lazy transitions

class PlanType(str, Enum):
    BASIC = "basic"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"

class SubscriptionStatus(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class Resource(str, Enum):
    ACCOUNTS = "accounts"
    TRANSACTIONS = "transactions"

class PaymentFamily(str, Enum):
    AUTOMATED = "automated"
    MANUAL = "manual"

class PaymentStatus(str, Enum):
    CREATED = "created"
    REDIRECTED = "redirected"
    AWAITING_PROOF = "awaiting_proof"
    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    COMPLETED = "completed"
    FAILED = "failed"
    REJECTED = "rejected"
    EXPIRED = "expired"

TERMINAL_PAYMENT_STATUSES = frozenset({
    PaymentStatus.COMPLETED,
    PaymentStatus.FAILED,
    PaymentStatus.REJECTED,
    PaymentStatus.EXPIRED,
})

# Manual payments waiting on an admin decision
PENDING_REVIEW_STATUSES = frozenset({
    PaymentStatus.SUBMITTED,
    PaymentStatus.UNDER_REVIEW,
})

class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"

class CouponRejectionReason(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    INACTIVE = "INACTIVE"
    EXPIRED = "EXPIRED"
    USAGE_LIMIT_REACHED = "USAGE_LIMIT_REACHED"
    PLAN_NOT_ELIGIBLE = "PLAN_NOT_ELIGIBLE"

class ReviewDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"

class ProofDecision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"

class CompletionSource(str, Enum):
    GATEWAY = "gateway"
    ADMIN_REVIEW = "admin_review"
    ZERO_AMOUNT = "zero_amount"

class GatewayEventStatus(str, Enum):
    PROCESSED = "PROCESSED"
    IGNORED = "IGNORED"

class EmailTemplateAlias(str, Enum):
    WELCOME_TRIAL = "welcome-trial"
    TRIAL_ENDING = "trial-ending"
    TRIAL_EXPIRED = "trial-expired"
    SUBSCRIPTION_ACTIVATED = "subscription-activated"
    PAYMENT_FAILED = "payment-failed"
    PAYMENT_REJECTED = "payment-rejected"
    PAYMENT_EXPIRED = "payment-expired"
    PROOF_RECEIVED = "proof-received"
    SUBSCRIPTION_PAST_DUE = "subscription-past-due"
    SUBSCRIPTION_CANCELED = "subscription-canceled"

class AuditAction(str, Enum):
    # Auth
    SUBSCRIBER_SIGNUP = "SUBSCRIBER_SIGNUP"
    USER_LOGIN_SUCCESS = "USER_LOGIN_SUCCESS"
    USER_LOGIN_FAILED = "USER_LOGIN_FAILED"
    ADMIN_CREATED = "ADMIN_CREATED"

    # Subscription lifecycle
    TRIAL_STARTED = "TRIAL_STARTED"
    TRIAL_EXPIRED = "TRIAL_EXPIRED"
    TRIAL_WARNING_SENT = "TRIAL_WARNING_SENT"
    SUBSCRIPTION_ACTIVATED = "SUBSCRIPTION_ACTIVATED"
    SUBSCRIPTION_PAST_DUE = "SUBSCRIPTION_PAST_DUE"
    SUBSCRIPTION_RECOVERED = "SUBSCRIPTION_RECOVERED"
    SUBSCRIPTION_CANCELED = "SUBSCRIPTION_CANCELED"
    PLAN_CHANGED = "PLAN_CHANGED"

    # Usage
    RESOURCE_CREATED = "RESOURCE_CREATED"
    LIMIT_EXCEEDED = "LIMIT_EXCEEDED"

    # Payments
    PAYMENT_CREATED = "PAYMENT_CREATED"
    PAYMENT_CHECKOUT_STARTED = "PAYMENT_CHECKOUT_STARTED"
    PAYMENT_CHECKOUT_FAILED = "PAYMENT_CHECKOUT_FAILED"
    PAYMENT_PROOF_SUBMITTED = "PAYMENT_PROOF_SUBMITTED"
    PAYMENT_COMPLETED = "PAYMENT_COMPLETED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    PAYMENT_REJECTED = "PAYMENT_REJECTED"
    PAYMENT_EXPIRED = "PAYMENT_EXPIRED"
    WEBHOOK_IGNORED = "WEBHOOK_IGNORED"

    # Campaigns
    CAMPAIGN_CREATED = "CAMPAIGN_CREATED"
    CAMPAIGN_UPDATED = "CAMPAIGN_UPDATED"
    COUPON_REDEEMED = "COUPON_REDEEMED"

    # Catalog
    PLAN_UPDATED = "PLAN_UPDATED"
    PAYMENT_METHOD_UPDATED = "PAYMENT_METHOD_UPDATED"

    # Email
    EMAIL_SENT = "EMAIL_SENT"
    EMAIL_FAILED = "EMAIL_FAILED"

# ============================================================================
# AUDIT & MESSAGING
# ============================================================================

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_role: Optional[UserRole] = None
    actor_id: Optional[str] = None
    subscriber_id: Optional[int] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    reason_code: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

class MessageLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    postmark_message_id: Optional[str] = None
    subscriber_id: Optional[int] = None
    recipient: str
    template_alias: EmailTemplateAlias
    subject: str
    status: str = "queued"
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    sent_at: Optional[datetime] = None

# ============================================================================
# PAYMENT METHODS (tagged by family)
# ============================================================================

class BankAccount(BaseModel):
    bank: str
    account_holder: str
    iban: str
    account_number: Optional[str] = None

class _PaymentMethodBase(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    display_name: str
    description: Optional[str] = None
    processing_time: Optional[str] = None
    fees: Optional[str] = None
    display_order: int = 0
    is_active: bool = True

class AutomatedPaymentMethod(_PaymentMethodBase):
    family: Literal["automated"] = "automated"
    gateway: str = "stripe"

class ManualPaymentMethod(_PaymentMethodBase):
    family: Literal["manual"] = "manual"
    instructions: str
    bank_accounts: List[BankAccount] = Field(default_factory=list)
    requires_phone_number: bool = False

    def render_instructions(self, amount: str, reference: str) -> str:
        return (
            self.instructions
            .replace("{{amount}}", amount)
            .replace("{{reference}}", reference)
        )

PaymentMethod = Annotated[
    Union[AutomatedPaymentMethod, ManualPaymentMethod],
    Field(discriminator="family"),
]

# ============================================================================
# REQUEST MODELS
# ============================================================================

class SignupRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8)
    first_name: str = Field(min_length=1, max_length=80)
    last_name: str = Field(min_length=1, max_length=80)
    phone: Optional[str] = None
    plan_type: PlanType = PlanType.BASIC

class LoginRequest(BaseModel):
    email: EmailStr
    password: str

class CouponValidateRequest(BaseModel):
    coupon_code: str
    plan_type: PlanType

class CreatePaymentRequest(BaseModel):
    plan_type: PlanType
    payment_method: str
    coupon_code: Optional[str] = None

class PaymentProofRequest(BaseModel):
    proof_description: Optional[str] = Field(default=None, max_length=2000)
    evidence_reference: Optional[str] = Field(default=None, max_length=500)
    bank_reference: Optional[str] = None
    phone_number: Optional[str] = None
    payment_date: Optional[datetime] = None

    @model_validator(mode="after")
    def _description_or_evidence(self) -> "PaymentProofRequest":
        self.proof_description = (self.proof_description or "").strip() or None
        self.evidence_reference = (self.evidence_reference or "").strip() or None
        if not self.proof_description and not self.evidence_reference:
            raise ValueError("Provide a proof description or an evidence reference")
        return self

class ReviewRequest(BaseModel):
    decision: ReviewDecision
    reason: Optional[str] = Field(default=None, max_length=1000)

class ChangePlanRequest(BaseModel):
    plan_type: PlanType

class CancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)

class PastDueRequest(BaseModel):
    reason: str = Field(default="payment_overdue", max_length=500)

class CampaignCreate(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    description: Optional[str] = None
    coupon_code: str
    discount_type: DiscountType
    discount_value: Decimal
    applicable_plans: List[PlanType] = Field(default_factory=list)
    max_uses: Optional[int] = Field(default=None, ge=1)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    is_active: bool = True

    @field_validator("discount_value")
    @classmethod
    def _positive(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("discount_value must be greater than zero")
        return v

class CampaignUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    description: Optional[str] = None
    discount_type: Optional[DiscountType] = None
    discount_value: Optional[Decimal] = None
    applicable_plans: Optional[List[PlanType]] = None
    max_uses: Optional[int] = Field(default=None, ge=1)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    is_active: Optional[bool] = None

class PlanUpdate(BaseModel):
    name: Optional[str] = None
    price: Optional[Decimal] = Field(default=None, ge=0)
    features: Optional[Dict[str, bool]] = None
    max_accounts: Optional[int] = Field(default=None, ge=-1)
    max_transactions_per_month: Optional[int] = Field(default=None, ge=-1)
    trial_days: Optional[int] = Field(default=None, ge=0)
    is_active: Optional[bool] = None

class PaymentMethodUpdate(BaseModel):
    display_name: Optional[str] = None
    instructions: Optional[str] = None
    processing_time: Optional[str] = None
    fees: Optional[str] = None
    display_order: Optional[int] = None
    is_active: Optional[bool] = None

class AccountCreate(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    account_type: str = "checking"
    initial_balance: Decimal = Decimal("0")
    currency: str = "AOA"

class FinanceTransactionCreate(BaseModel):
    account_id: str
    description: str = Field(min_length=1, max_length=255)
    amount: Decimal
    kind: Literal["income", "expense"] = "expense"
    category: Optional[str] = None
    occurred_on: Optional[datetime] = None

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: Dict[str, Any]
