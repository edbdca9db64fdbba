"""
Mercado Pago client: checkout preferences and payment lookups.

API Documentation: https://www.mercadopago.com.br/developers/en/reference
"""

import logging
from typing import Optional

import requests

from config import Settings

logger = logging.getLogger(__name__)


class PaymentProviderError(Exception):
    """Mercado Pago could not be reached or refused the request."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class MercadoPagoClient:
    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self.settings = settings
        self.base_url = settings.mercado_pago_base_url.rstrip("/")
        self.timeout = settings.payment_timeout
        self.session = session or requests.Session()

    def _headers(self) -> dict:
        if not self.settings.mercado_pago_access_token:
            raise PaymentProviderError("Mercado Pago access token is not configured")
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.settings.mercado_pago_access_token}",
        }

    def _request(self, method: str, path: str, payload: Optional[dict] = None) -> dict:
        headers = self._headers()
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(method, url, headers=headers, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error("Mercado Pago %s %s failed: %s", method, path, e)
            raise PaymentProviderError(f"Mercado Pago unreachable: {e}") from e

        if resp.status_code not in (200, 201):
            logger.error("Mercado Pago %s %s returned %s: %s", method, path, resp.status_code, resp.text[:300])
            raise PaymentProviderError(f"Mercado Pago returned {resp.status_code}", status=resp.status_code)
        try:
            return resp.json()
        except ValueError as e:
            raise PaymentProviderError("Mercado Pago returned invalid JSON") from e

    def create_preference(self, title: str, description: str, amount: float, metadata: dict,
                          external_reference: Optional[str] = None) -> dict:
        """Create a checkout preference; the reply carries `init_point`."""
        preference = {
            "items": [{
                "title": title,
                "description": description,
                "quantity": 1,
                "currency_id": "BRL",
                "unit_price": round(float(amount), 2),
            }],
            "back_urls": {
                "success": self.settings.back_url,
                "failure": self.settings.back_url,
                "pending": self.settings.back_url,
            },
            "auto_return": "approved",
            "metadata": metadata,
        }
        if self.settings.notification_url:
            preference["notification_url"] = self.settings.notification_url
        if external_reference:
            preference["external_reference"] = external_reference
        return self._request("POST", "/checkout/preferences", preference)

    def get_payment(self, payment_id: str) -> dict:
        return self._request("GET", f"/v1/payments/{payment_id}")
