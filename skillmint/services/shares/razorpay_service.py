from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

import httpx
from fastapi import Request
from loguru import logger

from skillmint.core.settings import settings


class RazorpayError(RuntimeError):
    def __init__(self, message: str, transient: bool = False, status_code: int | None = None):
        super().__init__(message)
        self.transient = transient
        self.status_code = status_code


class RazorpayService:
    """
    Razorpay REST client:
    - Orders API for course purchases and wallet top-ups
    - Refunds API for gateway refunds
    Timeouts, transport errors and 5xx are retried with exponential backoff;
    4xx answers are permanent.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        key_id: str | None = None,
        key_secret: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        backoff: float | None = None,
    ):
        self.http = http
        self.key_id = key_id if key_id is not None else settings.RAZORPAY_KEY_ID
        self.key_secret = key_secret if key_secret is not None else settings.RAZORPAY_KEY_SECRET
        self.base_url = (base_url or settings.RAZORPAY_BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.GATEWAY_TIMEOUT_SECONDS
        self.max_retries = max_retries if max_retries is not None else settings.GATEWAY_MAX_RETRIES
        self.backoff = backoff if backoff is not None else settings.GATEWAY_BACKOFF_SECONDS

    # =========================================================
    # INTERNAL
    # =========================================================
    async def _request(
        self, method: str, path: str, *, json: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        attempt = 0
        while True:
            attempt += 1
            try:
                resp = await self.http.request(
                    method,
                    url,
                    json=json,
                    auth=(self.key_id, self.key_secret),
                    timeout=self.timeout,
                )
            except (httpx.TimeoutException, httpx.TransportError) as e:
                error = RazorpayError(f"{type(e).__name__} calling {path}", transient=True)
            else:
                if resp.status_code < 400:
                    return resp.json()
                description = ""
                try:
                    description = resp.json().get("error", {}).get("description", "")
                except ValueError:
                    description = resp.text[:200]
                error = RazorpayError(
                    f"Razorpay {resp.status_code}: {description}",
                    transient=resp.status_code >= 500,
                    status_code=resp.status_code,
                )
                if not error.transient:
                    raise error

            if attempt > self.max_retries:
                logger.error(f"❌ Razorpay {method} {path} gave up after {attempt} attempts")
                raise error
            delay = self.backoff * (2 ** (attempt - 1))
            logger.warning(f"⚠ Razorpay {method} {path} failed ({error}), retry in {delay:.2f}s")
            await asyncio.sleep(delay)

    # =========================================================
    # ORDERS
    # =========================================================
    async def create_order(
        self,
        *,
        amount: int,
        currency: str = "INR",
        receipt: str,
        notes: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """``amount`` is in minor units (paise), as Razorpay expects."""
        return await self._request(
            "POST",
            "/v1/orders",
            json={
                "amount": amount,
                "currency": currency,
                "receipt": receipt[:40],
                "notes": notes or {},
            },
        )

    async def fetch_payment(self, payment_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/v1/payments/{payment_id}")

    # =========================================================
    # REFUNDS
    # =========================================================
    async def refund_payment(
        self, payment_id: str, amount: int, notes: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        return await self._request(
            "POST",
            f"/v1/payments/{payment_id}/refund",
            json={"amount": amount, "notes": notes or {}},
        )

    # =========================================================
    # PAYOUTS (RazorpayX)
    # =========================================================
    async def create_payout(
        self,
        *,
        account_number: str,
        fund_account_id: str,
        amount: int,
        currency: str = "INR",
        mode: str = "IMPS",
        reference_id: str,
        narration: str | None = None,
    ) -> Dict[str, Any]:
        return await self._request(
            "POST",
            "/v1/payouts",
            json={
                "account_number": account_number,
                "fund_account_id": fund_account_id,
                "amount": amount,
                "currency": currency,
                "mode": mode,
                "purpose": "payout",
                "queue_if_low_balance": True,
                "reference_id": reference_id[:40],
                "narration": (narration or "SkillMint payout")[:30],
            },
        )


def get_razorpay_service(request: Request) -> RazorpayService:
    return RazorpayService(http=request.app.state.http)
