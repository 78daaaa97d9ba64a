import logging
import os
import random
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional, Protocol, Tuple

from pydantic import BaseModel

from errors import InputValidationError, PaymentDeclinedError, PaymentGatewayError
from models import Account, PaymentRecord, Subscription, utc_now

logger = logging.getLogger(__name__)

SUBSCRIPTION_CYCLE_DAYS = int(os.environ.get("SUBSCRIPTION_CYCLE_DAYS", "30"))
PAYMENT_SIMULATED_SUCCESS_RATE = float(os.environ.get("PAYMENT_SIMULATED_SUCCESS_RATE", "0.9"))
REFERENCE_PREFIX = "SHULE"


class GatewayOutcome(str, Enum):
    SUCCESS = "success"
    DECLINED = "declined"
    PENDING = "pending"
    TRANSIENT_ERROR = "transient_error"


class ChargeRequest(BaseModel):
    reference: str
    amount: float
    currency: str
    method: str
    plan: str
    email: Optional[str] = None
    phone_number: Optional[str] = None


@dataclass
class GatewayResult:
    outcome: GatewayOutcome
    message: str = ""
    gateway_reference: Optional[str] = None


class PaymentGateway(Protocol):
    async def charge(self, request: ChargeRequest) -> GatewayResult:
        ...


class SimulatedGateway:
    """Approves a fixed share of charges. Pass a seeded ``rng`` for repeatable runs."""

    def __init__(self, success_rate: float = PAYMENT_SIMULATED_SUCCESS_RATE, rng: Optional[random.Random] = None):
        if not 0 <= success_rate <= 1:
            raise ValueError("success_rate must be between 0 and 1")
        self.success_rate = success_rate
        self._rng = rng or random.Random()

    async def charge(self, request: ChargeRequest) -> GatewayResult:
        if self._rng.random() < self.success_rate:
            return GatewayResult(
                outcome=GatewayOutcome.SUCCESS,
                message="Payment processed successfully",
                gateway_reference=f"SIM-{uuid.uuid4().hex[:12].upper()}",
            )
        return GatewayResult(
            outcome=GatewayOutcome.DECLINED,
            message="Payment failed. Please try again.",
        )


class SubscriptionPlan(BaseModel):
    plan_id: str
    name: str
    name_sw: str
    amount_kes: int
    cycle_days: int


def get_subscription_plans() -> List[SubscriptionPlan]:
    return [
        SubscriptionPlan(
            plan_id="pro",
            name="Pro Student",
            name_sw="Mwanafunzi Pro",
            amount_kes=199,
            cycle_days=SUBSCRIPTION_CYCLE_DAYS,
        ),
        SubscriptionPlan(
            plan_id="school",
            name="School Plan",
            name_sw="Mpango wa Shule",
            amount_kes=3999,
            cycle_days=SUBSCRIPTION_CYCLE_DAYS,
        ),
    ]


def get_plan(plan_id: str) -> SubscriptionPlan:
    for plan in get_subscription_plans():
        if plan.plan_id == plan_id:
            return plan
    raise InputValidationError(
        "Invalid subscription plan",
        details=[{"field": "plan", "message": f"Unknown plan: {plan_id}"}],
    )


def resolve_plan(label: str) -> str:
    normalized = (label or "").strip().lower()
    for plan in get_subscription_plans():
        if normalized in {plan.plan_id, plan.name.lower(), plan.name_sw.lower()}:
            return plan.plan_id
    raise InputValidationError(
        "Invalid subscription plan",
        details=[{"field": "plan", "message": f"Unknown plan: {label}"}],
    )


def is_subscription_active(subscription: Subscription, now: Optional[datetime] = None) -> bool:
    now = now or utc_now()
    return subscription.status == "active" and subscription.end_date > now


def generate_reference(account: Account, now: Optional[datetime] = None) -> str:
    now = now or utc_now()
    millis = int(now.timestamp() * 1000)
    taken = {payment.transaction_id for payment in account.subscription.payment_history}
    reference = f"{REFERENCE_PREFIX}_{millis}_{account.id}"
    while reference in taken:
        millis += 1
        reference = f"{REFERENCE_PREFIX}_{millis}_{account.id}"
    return reference


def parse_reference(reference: str) -> Optional[str]:
    parts = (reference or "").split("_", 2)
    if len(parts) != 3 or parts[0] != REFERENCE_PREFIX or not parts[1].isdigit() or not parts[2]:
        return None
    return parts[2]


def find_payment(account: Account, reference: str) -> Optional[PaymentRecord]:
    for payment in account.subscription.payment_history:
        if payment.transaction_id == reference:
            return payment
    return None


def activate_plan(account: Account, plan: str, now: Optional[datetime] = None) -> Account:
    now = now or utc_now()
    subscription = account.subscription
    subscription.plan = plan
    subscription.status = "active"
    subscription.start_date = now
    subscription.end_date = now + timedelta(days=SUBSCRIPTION_CYCLE_DAYS)
    return account


async def charge_subscription(
    account: Account,
    *,
    amount: float,
    method: str,
    plan_label: str,
    gateway: PaymentGateway,
    currency: str = "KES",
    email: Optional[str] = None,
    phone_number: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Tuple[PaymentRecord, GatewayResult]:
    """Charge through the gateway and describe the outcome; the account is left untouched."""
    now = now or utc_now()
    plan = resolve_plan(plan_label)
    if currency != "KES":
        raise InputValidationError(
            "Unsupported currency",
            details=[{"field": "currency", "message": "Only KES is supported"}],
        )
    price = get_plan(plan).amount_kes
    if amount < price:
        raise InputValidationError(
            "Payment amount is below the plan price",
            details=[{"field": "amount", "message": f"{plan} costs KES {price}"}],
        )
    reference = generate_reference(account, now)
    result = await gateway.charge(
        ChargeRequest(
            reference=reference,
            amount=amount,
            currency=currency,
            method=method,
            plan=plan,
            email=email,
            phone_number=phone_number,
        )
    )
    if result.outcome is GatewayOutcome.TRANSIENT_ERROR:
        logger.error(
            "payment_gateway_error user_id=%s reference=%s message=%s",
            account.id,
            reference,
            result.message,
        )
        raise PaymentGatewayError()

    status = {
        GatewayOutcome.SUCCESS: "completed",
        GatewayOutcome.PENDING: "pending",
    }.get(result.outcome, "failed")
    record = PaymentRecord(
        amount=amount,
        currency=currency,
        method=method,
        transaction_id=reference,
        plan=plan,
        gateway_reference=result.gateway_reference,
        date=now,
        status=status,
    )
    logger.info(
        "payment_%s user_id=%s reference=%s plan=%s amount=%s",
        status,
        account.id,
        reference,
        plan,
        amount,
    )
    return record, result


def apply_payment(account: Account, record: PaymentRecord, now: Optional[datetime] = None) -> Account:
    if record.status == "completed" and record.plan:
        activate_plan(account, record.plan, now)
    if find_payment(account, record.transaction_id) is None:
        account.subscription.payment_history.append(record)
    return account


async def process_payment(
    account: Account,
    *,
    amount: float,
    method: str,
    plan_label: str,
    gateway: PaymentGateway,
    currency: str = "KES",
    email: Optional[str] = None,
    phone_number: Optional[str] = None,
    now: Optional[datetime] = None,
) -> PaymentRecord:
    now = now or utc_now()
    record, result = await charge_subscription(
        account,
        amount=amount,
        method=method,
        plan_label=plan_label,
        gateway=gateway,
        currency=currency,
        email=email,
        phone_number=phone_number,
        now=now,
    )
    apply_payment(account, record, now)
    if record.status == "failed":
        raise PaymentDeclinedError(result.message or "Payment failed. Please try again.", record.transaction_id)
    return record


def is_pending_payment(account: Account, reference: str) -> bool:
    payment = find_payment(account, reference)
    return payment is not None and payment.status == "pending"


def apply_callback(
    account: Account,
    reference: str,
    status: str,
    gateway_transaction_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Settle a pending payment from a gateway confirmation.

    Settled records are final: a callback cannot revive a declined charge or
    reverse a completed one.
    """
    payment = find_payment(account, reference)
    if payment is None or payment.status != "pending":
        return False
    new_status = "completed" if status.strip().lower() in {"completed", "complete", "success"} else "failed"
    payment.status = new_status
    if gateway_transaction_id:
        payment.gateway_reference = gateway_transaction_id
    if new_status == "completed" and payment.plan:
        activate_plan(account, payment.plan, now)
    logger.info(
        "payment_callback_applied user_id=%s reference=%s status=%s",
        account.id,
        reference,
        new_status,
    )
    return True
