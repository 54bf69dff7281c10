"""
Serverless function invocation (payments, account deletion).
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import uuid
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol

import requests

from lastwishes.errors import FunctionError

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30  # seconds

CREATE_ORDER_FUNCTION = "create-razorpay-order"
VERIFY_PAYMENT_FUNCTION = "verify-razorpay-payment"
DELETE_USER_FUNCTION = "delete-user"


class FunctionClient(Protocol):
    def invoke(
        self, name: str, body: Optional[dict] = None, access_token: Optional[str] = None
    ) -> dict:
        ...


FunctionHandler = Callable[[dict, Optional[str]], dict]


@dataclass
class InMemoryFunctionClient:
    """
    Test double. Handlers are registered per function name; calls are recorded.
    """

    handlers: dict[str, FunctionHandler] = field(default_factory=dict)
    calls: list[tuple[str, dict, Optional[str]]] = field(default_factory=list)
    payment_secret: str = "test-secret"

    def __post_init__(self):
        self.handlers.setdefault(CREATE_ORDER_FUNCTION, self._create_order)
        self.handlers.setdefault(VERIFY_PAYMENT_FUNCTION, self._verify_payment)
        self.handlers.setdefault(DELETE_USER_FUNCTION, lambda body, token: {"ok": True})

    def invoke(
        self, name: str, body: Optional[dict] = None, access_token: Optional[str] = None
    ) -> dict:
        body = body or {}
        self.calls.append((name, body, access_token))
        handler = self.handlers.get(name)
        if handler is None:
            raise FunctionError(f"Function not found: {name}", code="404")
        return handler(body, access_token)

    def sign(self, order_id: str, payment_id: str) -> str:
        message = f"{order_id}|{payment_id}".encode("utf-8")
        return hmac.new(self.payment_secret.encode("utf-8"), message, hashlib.sha256).hexdigest()

    def _create_order(self, body: dict, access_token: Optional[str]) -> dict:
        if not body.get("amount"):
            return {"error": "amount is required"}
        return {
            "id": f"order_{uuid.uuid4().hex[:14]}",
            "amount": body["amount"],
            "currency": body.get("currency", "INR"),
            "status": "created",
        }

    def _verify_payment(self, body: dict, access_token: Optional[str]) -> dict:
        expected = self.sign(
            body.get("razorpay_order_id", ""), body.get("razorpay_payment_id", "")
        )
        if not hmac.compare_digest(expected, body.get("razorpay_signature") or ""):
            raise FunctionError("Invalid payment signature", code="400")
        return {"verified": True}


class HttpFunctionClient:
    """
    Invokes the backend's serverless functions over HTTP.
    """

    def __init__(self, base_url: str, anon_key: str):
        if not base_url or not anon_key:
            raise ValueError("BACKEND_URL and BACKEND_ANON_KEY are required")
        self.functions_url = f"{base_url.rstrip('/')}/functions/v1"
        self.anon_key = anon_key

    def invoke(
        self, name: str, body: Optional[dict] = None, access_token: Optional[str] = None
    ) -> dict:
        try:
            response = requests.post(
                f"{self.functions_url}/{name}",
                json=body or {},
                headers={
                    "apikey": self.anon_key,
                    "Authorization": f"Bearer {access_token or self.anon_key}",
                },
                timeout=REQUEST_TIMEOUT,
            )
        except requests.RequestException as exc:
            raise FunctionError(f"Function {name} unreachable: {exc}") from exc
        if not response.ok:
            logger.warning("Function %s returned HTTP %s", name, response.status_code)
            raise FunctionError(
                f"Function {name} failed with HTTP {response.status_code}",
                code=str(response.status_code),
            )
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise FunctionError(
                f"Function {name} returned a non-JSON body (HTTP {response.status_code})",
                code=str(response.status_code),
            ) from exc
