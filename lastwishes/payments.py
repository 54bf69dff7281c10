"""
Subscription plans and the payment gateway checkout/verification handshake.

Amounts are in INR; the gateway takes paise.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from lastwishes.errors import ActionError, BackendError
from lastwishes.functions import CREATE_ORDER_FUNCTION, VERIFY_PAYMENT_FUNCTION, FunctionClient
from lastwishes.identity import AuthSession
from lastwishes.schemas import Message

logger = logging.getLogger(__name__)

MERCHANT_NAME = "Book My Last Wishes"
FALLBACK_ORDER_ID = "fallback_order"


@dataclass(frozen=True)
class Plan:
    id: str
    name: str
    monthly: int
    yearly: int
    features: tuple[str, ...] = field(default_factory=tuple)

    def price(self, billing_cycle: str) -> int:
        return self.yearly if billing_cycle == "yearly" else self.monthly

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "price": {"monthly": self.monthly, "yearly": self.yearly},
            "features": list(self.features),
        }


PLANS = (
    Plan(
        id="basic",
        name="Basic",
        monthly=0,
        yearly=0,
        features=(
            "1 GB Secure Document Storage",
            "3 Letters & Messages",
            "1 Nominee / Executor",
            "Access to My Wishes",
            "Basic Document Vault",
            "Email Support",
        ),
    ),
    Plan(
        id="standard",
        name="Standard",
        monthly=299,
        yearly=2999,
        features=(
            "10 GB Secure Document Storage",
            "10 Letters & Messages",
            "Up to 3 Nominees / Executors",
            "Priority Email Support",
            "Delivery Settings (SMS + Email)",
            "Document Sharing Options",
            "Activity Log",
        ),
    ),
    Plan(
        id="premium",
        name="Premium",
        monthly=799,
        yearly=7999,
        features=(
            "100 GB Storage",
            "Unlimited Letters & Messages",
            "Unlimited Nominees / Executors",
            "Auto-Scheduled Wishes",
            "Lifetime Vault Access",
            "Advanced Security (2FA + Alerts)",
            "Dedicated Support Manager",
            "Priority Secure Delivery",
        ),
    ),
)


def get_plan(plan_id: str) -> Plan:
    for plan in PLANS:
        if plan.id == plan_id.lower():
            return plan
    raise ActionError(f"Unknown plan: {plan_id}", status_code=404)


def _create_order(
    functions: FunctionClient, amount: int, currency: str, access_token: str
) -> Optional[str]:
    """Order id from the server, or None when order creation is unavailable."""
    try:
        order = functions.invoke(
            CREATE_ORDER_FUNCTION,
            {"amount": amount, "currency": currency},
            access_token=access_token,
        )
        if order.get("error"):
            raise BackendError(str(order["error"]))
        return order["id"]
    except (BackendError, KeyError) as exc:
        # Checkout still opens without a server order.
        logger.warning("Server-side order creation failed, continuing without order: %s", exc)
        return None


def build_checkout(
    session: AuthSession,
    plan_id: str,
    billing_cycle: str,
    *,
    functions: FunctionClient,
    key_id: Optional[str],
    currency: str = "INR",
) -> dict:
    """Options for the gateway's checkout widget."""
    if not key_id:
        raise ActionError(
            "Configuration Error: Razorpay Key ID is missing.", status_code=500
        )
    plan = get_plan(plan_id)
    amount = plan.price(billing_cycle) * 100
    if amount <= 0:
        raise ActionError(f"The {plan.name} plan is free; no payment is needed.")

    order_id = _create_order(functions, amount, currency, session.access_token)
    user = session.user
    return {
        "key": key_id,
        "amount": amount,
        "currency": currency,
        "name": MERCHANT_NAME,
        "description": f"{plan.name} Plan Subscription",
        "order_id": order_id,
        "prefill": {
            "name": user.display_name or user.email,
            "email": user.email,
        },
    }


def verify_payment(
    session: AuthSession,
    plan_id: str,
    payment_id: str,
    *,
    functions: FunctionClient,
    order_id: Optional[str] = None,
    signature: Optional[str] = None,
    billing_cycle: str = "yearly",
    currency: str = "INR",
) -> Message:
    """
    Confirm a payment the gateway reported as successful.

    The money has already moved at this point, so a verification failure is a
    warning carrying the payment id, never an error.
    """
    plan = get_plan(plan_id)
    try:
        functions.invoke(
            VERIFY_PAYMENT_FUNCTION,
            {
                "razorpay_order_id": order_id or FALLBACK_ORDER_ID,
                "razorpay_payment_id": payment_id,
                "razorpay_signature": signature,
                "amount": plan.price(billing_cycle) * 100,
                "currency": currency,
                "plan_name": plan.name,
            },
            access_token=session.access_token,
        )
    except BackendError as exc:
        logger.error("Payment %s verification failed: %s", payment_id, exc.message)
        return Message(
            type="warning",
            text=(
                "Payment successful, but server verification failed. "
                f"Please contact support with Payment ID: {payment_id}"
            ),
        )
    logger.info("Payment %s verified for user_id=%s", payment_id, session.user.id)
    return Message(type="success", text=f"Payment verified! Welcome to the {plan.name} plan.")
