"""
Client-side x402 handling for httpx.

``PaymentAuth`` answers a 402 challenge by signing an authorization for the
advertised terms and retrying the request once with ``X-PAYMENT`` attached.

    async with payment_client(private_key) as client:
        response = await client.post("http://localhost:4023/request-mint", json={})
"""

import time
from typing import Any, Callable, Generator, Optional

import httpx
import structlog
from eth_account import Account
from pydantic import ValidationError

from .codec import encode_payment_header
from .eip3009 import create_payment_payload
from .types import PaymentTerms

logger = structlog.get_logger()

PAYMENT_HEADER = "X-PAYMENT"
PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"


class PaymentRequiredError(Exception):
    """The server still demanded payment, or its demand could not be met."""

    def __init__(self, message: str, response: Optional[httpx.Response] = None):
        super().__init__(message)
        self.response = response


class PaymentAuth(httpx.Auth):
    """httpx auth flow that pays for a request at most once."""

    requires_response_body = True

    def __init__(
        self,
        private_key: str,
        *,
        max_amount: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.private_key = private_key
        self.address = Account.from_key(private_key).address
        self.max_amount = max_amount
        self.clock = clock

    def _terms_from(self, response: httpx.Response) -> PaymentTerms:
        try:
            return PaymentTerms.model_validate(response.json()["paymentDetails"])
        except (ValueError, KeyError, TypeError, ValidationError) as e:
            raise PaymentRequiredError(f"Unreadable payment challenge: {e}", response) from e

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        response = yield request
        if response.status_code != 402:
            return

        terms = self._terms_from(response)
        if self.max_amount is not None and terms.amount_required > self.max_amount:
            raise PaymentRequiredError(
                f"Requested {terms.max_amount_required} exceeds limit {self.max_amount}", response
            )

        payload = create_payment_payload(self.private_key, terms, now=int(self.clock()))
        request.headers[PAYMENT_HEADER] = encode_payment_header(payload)
        logger.info(
            "Paying for request",
            url=str(request.url),
            payer=self.address,
            amount=terms.max_amount_required,
            pay_to=terms.pay_to_address,
        )

        response = yield request
        if response.status_code == 402:
            try:
                body = response.json()
            except ValueError:
                body = None
            reason = (body.get("details") or body.get("error")) if isinstance(body, dict) else None
            raise PaymentRequiredError(f"Payment was not accepted: {reason}", response)


def payment_client(
    private_key: str,
    *,
    max_amount: Optional[int] = None,
    **kwargs: Any,
) -> httpx.AsyncClient:
    """An ``httpx.AsyncClient`` that transparently pays x402 challenges."""
    return httpx.AsyncClient(auth=PaymentAuth(private_key, max_amount=max_amount), **kwargs)
