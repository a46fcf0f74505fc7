from datetime import datetime, timedelta
from typing import Optional

import requests

from .errors import UpstreamFailure
from .orders import (
    ORDER_STATUS_COMPLETE,
    ORDER_STATUS_FAILED,
    ORDER_STATUS_PENDING,
)

# Checkout states reported by SumUp mapped onto order states.
SUMUP_STATUS_MAP = {
    "PAID": ORDER_STATUS_COMPLETE,
    "SUCCESSFUL": ORDER_STATUS_COMPLETE,
    "PENDING": ORDER_STATUS_PENDING,
    "FAILED": ORDER_STATUS_FAILED,
    "EXPIRED": ORDER_STATUS_FAILED,
}


class PaymentGateway:
    def checkout_status(self, checkout_reference: str) -> str:
        """Return the order status that matches the gateway's checkout state."""
        raise NotImplementedError


class SumUpGateway(PaymentGateway):
    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        logger,
        base_url: str = "https://api.sumup.com",
        timeout: float = 15,
        session: Optional[requests.Session] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.logger = logger
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self._token_cache = {"access_token": None, "expires_at": None}

    def get_access_token(self) -> str:
        if not self.client_id or not self.client_secret:
            raise UpstreamFailure("SumUp configuration is incomplete. Please contact support.")

        now = datetime.utcnow()
        if (
            self._token_cache["access_token"]
            and self._token_cache["expires_at"]
            and self._token_cache["expires_at"] > now + timedelta(seconds=30)
        ):
            return self._token_cache["access_token"]

        payload = {
            "grant_type": "client_credentials",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }
        try:
            response = self.session.post(
                f"{self.base_url}/token", data=payload, timeout=self.timeout
            )
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            self.logger.error("SumUp Auth Error: %s", exc)
            raise UpstreamFailure("Failed to authenticate with payment provider.") from exc

        access_token = data.get("access_token")
        if not access_token:
            raise UpstreamFailure("Failed to authenticate with payment provider.")

        self._token_cache["access_token"] = access_token
        self._token_cache["expires_at"] = now + timedelta(
            seconds=int(data.get("expires_in", 3600) or 3600)
        )
        return access_token

    def checkout_status(self, checkout_reference: str) -> str:
        access_token = self.get_access_token()
        try:
            response = self.session.get(
                f"{self.base_url}/v0.1/checkouts/{checkout_reference}",
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            self.logger.error("SumUp checkout lookup failed: %s", exc)
            raise UpstreamFailure("Payment provider is unreachable.") from exc

        if response.status_code != 200:
            self.logger.error(
                "SumUp checkout %s verification failed: %s",
                checkout_reference,
                response.text,
            )
            raise UpstreamFailure("Payment verification failed.")

        try:
            verified_status = str(response.json().get("status") or "").upper()
        except ValueError as exc:
            raise UpstreamFailure("Payment provider sent an unreadable response.") from exc

        order_status = SUMUP_STATUS_MAP.get(verified_status)
        if not order_status:
            self.logger.warning(
                "SumUp checkout %s reported unknown status %s",
                checkout_reference,
                verified_status,
            )
            raise UpstreamFailure(f"Unexpected payment status: {verified_status}")
        return order_status
