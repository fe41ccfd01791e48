"""
Payment gateway collaborator.

The core only needs two calls: create an order for an online payment and
look up an order's status and gateway reference during reconciliation.
``CashfreeGateway`` talks to the Cashfree PG orders API; every call is bounded
by a timeout and failures surface as retryable ``GatewayError``/``GatewayTimeout``.
"""

import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, Optional

import requests

from .exceptions import GatewayError, GatewayTimeout
from .models import GatewayCustomer, GatewayOrder, PaymentStatus

logger = logging.getLogger(__name__)

SUCCESS_STATUSES = {"PAID", "SUCCESS"}
FAILED_STATUSES = {"EXPIRED", "TERMINATED", "CANCELLED", "FAILED", "USER_DROPPED"}


def map_gateway_status(gateway_status: Optional[str]) -> Optional[PaymentStatus]:
    """Map a gateway order status onto a ledger status; None means still unresolved."""
    if not gateway_status:
        return None
    normalized = gateway_status.strip().upper()
    if normalized in SUCCESS_STATUSES:
        return PaymentStatus.SUCCESS
    if normalized in FAILED_STATUSES:
        return PaymentStatus.FAILED
    return None


class PaymentGateway(ABC):
    @abstractmethod
    def create_order(
        self, order_id: str, amount: Decimal, currency: str, customer: GatewayCustomer
    ) -> GatewayOrder:
        ...

    @abstractmethod
    def get_order(self, order_id: str) -> GatewayOrder:
        ...


class CashfreeGateway(PaymentGateway):
    def __init__(
        self,
        client_id: str,
        client_secret: str,
        base_url: str = "https://sandbox.cashfree.com/pg",
        api_version: str = "2023-08-01",
        timeout: float = 10.0,
    ):
        if not client_id or not client_secret:
            raise GatewayError("Cashfree credentials are not configured")
        self.client_id = client_id
        self.client_secret = client_secret
        self.base_url = base_url.rstrip("/")
        self.api_version = api_version
        self.timeout = timeout

    def _request(self, method: str, endpoint: str, data: Optional[Dict] = None) -> Dict[str, Any]:
        url = f"{self.base_url}{endpoint}"
        headers = {
            "x-client-id": self.client_id,
            "x-client-secret": self.client_secret,
            "x-api-version": self.api_version,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        logger.debug(f"Cashfree {method} {endpoint}")
        try:
            response = requests.request(method=method, url=url, json=data, headers=headers, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.exceptions.Timeout as e:
            logger.warning(f"Cashfree timeout on {method} {endpoint}")
            raise GatewayTimeout(f"Payment gateway timed out after {self.timeout}s", original_error=e) from e
        except requests.exceptions.ConnectionError as e:
            logger.warning(f"Cashfree connection error on {method} {endpoint}: {e}")
            raise GatewayError("Payment gateway unreachable", original_error=e) from e
        except requests.exceptions.HTTPError as e:
            status_code = e.response.status_code if e.response is not None else "unknown"
            logger.error(f"Cashfree HTTP error {status_code} on {method} {endpoint}")
            raise GatewayError(f"Payment gateway returned HTTP {status_code}", original_error=e) from e
        except ValueError as e:
            logger.error(f"Cashfree returned a non-JSON body for {method} {endpoint}")
            raise GatewayError("Payment gateway returned an invalid response", original_error=e) from e
        except requests.exceptions.RequestException as e:
            logger.error(f"Cashfree request failed on {method} {endpoint}: {e}")
            raise GatewayError("Payment gateway request failed", original_error=e) from e

    def create_order(
        self, order_id: str, amount: Decimal, currency: str, customer: GatewayCustomer
    ) -> GatewayOrder:
        payload = {
            "order_id": order_id,
            "order_amount": float(amount),
            "order_currency": currency,
            "customer_details": {
                "customer_id": customer.customer_id or order_id,
                "customer_name": customer.name,
                "customer_email": customer.email,
                "customer_phone": customer.phone,
            },
        }
        result = self._request("POST", "/orders", payload)
        return GatewayOrder(
            order_id=result.get("order_id", order_id),
            payment_session_id=result.get("payment_session_id"),
            status=result.get("order_status", "ACTIVE"),
        )

    def get_order(self, order_id: str) -> GatewayOrder:
        result = self._request("GET", f"/orders/{order_id}")
        status = result.get("order_status")
        if not status:
            raise GatewayError(f"Gateway response for order {order_id} carried no status")
        cf_order_id = result.get("cf_order_id")
        return GatewayOrder(
            order_id=result.get("order_id", order_id),
            payment_session_id=result.get("payment_session_id"),
            status=status,
            reference_id=str(cf_order_id) if cf_order_id is not None else None,
        )
