"""
HTTP client for the external payment authority.

Errors come back as JSON `{"error": {"code": "...", "message": "..."}}`.
The codes the engine cares about are mapped to typed exceptions here, so
nothing upstream has to match on error message text.
"""

from typing import Optional

import httpx

from studio_booking.core.config import get_settings
from studio_booking.core.exceptions import NoDropInPlanConfigured, PaymentDeclined
from studio_booking.core.logging import get_logger
from studio_booking.services.interfaces.payment import PaymentAuthority, PaymentAuthorization

logger = get_logger(__name__)

DECLINE_CODES = {"card_declined", "insufficient_funds", "expired_card", "authentication_required"}
NO_DROP_IN_PLAN_CODES = {"no_drop_in_plan", "drop_in_not_configured"}


class HttpPaymentAuthority(PaymentAuthority):
    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        settings = get_settings()
        headers = {}
        if settings.PAYMENT_AUTHORITY_TOKEN:
            headers["Authorization"] = f"Bearer {settings.PAYMENT_AUTHORITY_TOKEN}"
        self.client = client or httpx.AsyncClient(
            base_url=settings.PAYMENT_AUTHORITY_URL,
            headers=headers,
            timeout=settings.PAYMENT_AUTHORITY_TIMEOUT,
        )

    async def authorize(
        self,
        member_id: int,
        studio_id: int,
        amount_cents: int,
        currency: str,
        payment_method_id: str,
        idempotency_key: Optional[str] = None,
    ) -> PaymentAuthorization:
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        response = await self.client.post(
            "/v1/authorizations",
            json={
                "member_id": member_id,
                "studio_id": studio_id,
                "amount_cents": amount_cents,
                "currency": currency,
                "payment_method_id": payment_method_id,
                "purpose": "drop_in",
            },
            headers=headers,
        )
        body = self._check(response, "authorize")
        return PaymentAuthorization(
            id=str(body["id"]),
            amount_cents=int(body.get("amount_cents", amount_cents)),
            currency=body.get("currency", currency),
        )

    async def capture(self, authorization_id: str) -> None:
        self._check(await self.client.post(f"/v1/authorizations/{authorization_id}/capture"), "capture")

    async def void(self, authorization_id: str) -> None:
        self._check(await self.client.post(f"/v1/authorizations/{authorization_id}/void"), "void")

    async def refund(self, authorization_id: str) -> None:
        self._check(await self.client.post(f"/v1/authorizations/{authorization_id}/refund"), "refund")

    async def charge_fee(
        self,
        member_id: int,
        studio_id: int,
        amount_cents: int,
        currency: str,
        reference: str,
    ) -> str:
        response = await self.client.post(
            "/v1/charges",
            json={
                "member_id": member_id,
                "studio_id": studio_id,
                "amount_cents": amount_cents,
                "currency": currency,
                "reference": reference,
                "purpose": "late_cancel_fee",
            },
            headers={"Idempotency-Key": reference},
        )
        return str(self._check(response, "charge_fee")["id"])

    async def aclose(self) -> None:
        await self.client.aclose()

    def _check(self, response: httpx.Response, action: str) -> dict:
        if response.is_success:
            return response.json() if response.content else {}

        code, message = self._error_of(response)
        logger.warning("payment_authority_error", action=action, status=response.status_code, code=code)
        if code in NO_DROP_IN_PLAN_CODES:
            raise NoDropInPlanConfigured(message or "Studio has no drop-in plan")
        if code in DECLINE_CODES or response.status_code == 402:
            raise PaymentDeclined(message or "Payment was declined")
        response.raise_for_status()
        return {}

    @staticmethod
    def _error_of(response: httpx.Response) -> tuple[Optional[str], Optional[str]]:
        try:
            error = response.json().get("error") or {}
        except ValueError:
            return None, None
        if not isinstance(error, dict):
            return str(error), None
        return error.get("code"), error.get("message")
