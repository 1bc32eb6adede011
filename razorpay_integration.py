# razorpay_integration.py - Razorpay Orders API Integration
"""
Payment gateway client. Creates Razorpay orders (payment intents) for the
amount a customer must pay, and verifies the checkout signature Razorpay
returns to the client after payment.
"""

import asyncio
import hashlib
import hmac
import logging
import os
from typing import Any, Dict, Optional

import httpx
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

RAZORPAY_BASE_URL = os.getenv("RAZORPAY_BASE_URL", "https://api.razorpay.com/v1")


def compute_signature(secret: str, gateway_order_id: str, gateway_payment_id: str) -> str:
    """Hex HMAC-SHA256 of `"{gateway_order_id}|{gateway_payment_id}"` keyed with `secret`."""
    message = f"{gateway_order_id}|{gateway_payment_id}"
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_signature(secret: str, gateway_order_id: str, gateway_payment_id: str, signature: str) -> bool:
    """Constant-time check of a Razorpay checkout signature."""
    expected = compute_signature(secret, gateway_order_id, gateway_payment_id)
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))


class RazorpayIntegration:
    """
    Razorpay Orders API client.
    """

    def __init__(
        self,
        key_id: Optional[str] = None,
        key_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        backoff_factor: float = 1.0
    ):
        """
        Raises:
            ValueError: If credentials are not configured
        """
        self.key_id = key_id or os.getenv("RAZORPAY_KEY_ID")
        self.key_secret = key_secret or os.getenv("RAZORPAY_KEY_SECRET")
        self.base_url = (base_url or RAZORPAY_BASE_URL).rstrip("/")
        self.backoff_factor = backoff_factor

        if not self.key_id or not self.key_secret:
            error_msg = (
                "Razorpay credentials not configured. "
                "Set RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET environment variables."
            )
            logger.error(error_msg)
            raise ValueError(error_msg)

        self.client = client or httpx.AsyncClient(timeout=30.0)
        logger.info("RazorpayIntegration initialized with valid credentials")

    async def create_intent(
        self,
        amount_minor_units: int,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Create a Razorpay order.

        Args:
            amount_minor_units: Amount in the currency's smallest unit (paise for INR)
            currency: ISO currency code
            receipt: Merchant reference, here the order id
            notes: Free-form key/value metadata stored on the Razorpay order

        Returns:
            The Razorpay order payload; its `id` is the intent identifier.
        """
        if not isinstance(amount_minor_units, int) or isinstance(amount_minor_units, bool) or amount_minor_units <= 0:
            raise ValueError(f"Amount must be a positive integer in minor units, got {amount_minor_units!r}")

        payload = {
            "amount": amount_minor_units,
            "currency": currency,
            "receipt": receipt,
            "notes": {k: str(v) for k, v in (notes or {}).items()},
        }
        data = await self._make_api_request("POST", "/orders", payload)
        logger.info(f"Razorpay order {data.get('id')} created for receipt {receipt} ({amount_minor_units} {currency})")
        return data

    async def _make_api_request(self, method: str, path: str, payload: Optional[Dict] = None) -> Dict:
        """
        Make API request to Razorpay with retry logic.

        Retries:
        - Up to 3 attempts
        - Exponential backoff scaled by `backoff_factor` (2s, 4s by default)
        - Retries on HTTP 429 (rate limit), 503 (service unavailable) and network errors
        - No retry on other HTTP errors

        Raises:
            httpx.HTTPError: On non-retryable errors or once retries are exhausted
        """
        url = f"{self.base_url}{path}"
        attempts = 3
        for attempt in range(1, attempts + 1):
            try:
                resp = await self.client.request(
                    method, url, json=payload, auth=(self.key_id, self.key_secret)
                )
                resp.raise_for_status()
                return resp.json()
            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                if status in (429, 503) and attempt < attempts:
                    wait_s = self.backoff_factor * (2 ** attempt)
                    logger.warning(
                        f"Transient Razorpay error {status}; "
                        f"retrying in {wait_s}s (attempt {attempt}/{attempts})"
                    )
                    await asyncio.sleep(wait_s)
                    continue
                logger.error(f"Razorpay API error {status}: {e.response.text}")
                raise
            except httpx.HTTPError as e:
                if attempt < attempts:
                    wait_s = self.backoff_factor * (2 ** attempt)
                    logger.warning(
                        f"Network error; retrying in {wait_s}s (attempt {attempt}/{attempts}): {e}"
                    )
                    await asyncio.sleep(wait_s)
                    continue
                logger.error(f"Network error (final): {e}")
                raise

        raise httpx.HTTPError("Razorpay API request failed after retries")

    async def close(self):
        """Close HTTP client connection."""
        await self.client.aclose()
        logger.info("Razorpay client closed")


# Global integration instance (lazy initialization)
razorpay: Optional[RazorpayIntegration] = None


def get_razorpay() -> RazorpayIntegration:
    """
    Get or create global Razorpay integration instance.

    Raises:
        ValueError: If credentials not configured
    """
    global razorpay
    if razorpay is None:
        razorpay = RazorpayIntegration()
    return razorpay
