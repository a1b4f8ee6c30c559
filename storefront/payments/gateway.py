import asyncio
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional
import httpx
import requests
from storefront.common.retries import retry_async
from storefront.config.settings import config_settings
from storefront.payments.constants import INSTANT_REFUND_SPEED, TEST_KEY_PREFIX, logger

PAISE = Decimal("100")


def to_minor_units(amount: Decimal) -> int:
    """Rupees -> paise, half up."""
    return int((Decimal(amount) * PAISE).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount_minor: int) -> Decimal:
    return (Decimal(int(amount_minor)) / PAISE).quantize(Decimal("0.01"))


def _as_int(v: Any) -> int:
    # gateway sometimes returns amounts as strings
    if v is None or v == "":
        return 0
    return int(v)


class GatewayError(Exception):
    """A non-success answer (or no answer) from the payment gateway."""

    def __init__(self, message: str, *, status_code: Optional[int] = None,
                 code: Optional[str] = None, description: Optional[str] = None,
                 body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.description = description
        self.body = body

    def diagnostics(self) -> Dict[str, Any]:
        return {"gateway_status": self.status_code, "gateway_code": self.code,
                "gateway_description": self.description}


class PaymentNotFound(GatewayError):
    pass


@dataclass(frozen=True)
class GatewayPayment:
    id: str
    status: str
    amount: int              # paise
    amount_refunded: int     # paise
    method: Optional[str] = None
    order_id: Optional[str] = None

    @property
    def refundable(self) -> int:
        return max(0, self.amount - self.amount_refunded)


def _error_from_response(resp: httpx.Response, action: str) -> GatewayError:
    try:
        body = resp.json()
    except ValueError:
        body = {"raw": resp.text}
    err = body.get("error", {}) if isinstance(body, dict) else {}
    description = err.get("description") if isinstance(err, dict) else None
    code = err.get("code") if isinstance(err, dict) else None
    cls = GatewayError
    if action == "fetch_payment" and (
        resp.status_code == 404 or (resp.status_code == 400 and description and "does not exist" in description.lower())
    ):
        cls = PaymentNotFound
    return cls(f"{action} failed with http {resp.status_code}", status_code=resp.status_code,
               code=code, description=description, body=body)


def _json_body(resp: httpx.Response, action: str) -> dict:
    # a 2xx without a json object counts as a failed call
    try:
        body = resp.json()
    except ValueError as e:
        raise GatewayError(f"{action} returned a non json body", status_code=resp.status_code,
                           body={"raw": resp.text[:500]}) from e
    if not isinstance(body, dict):
        raise GatewayError(f"{action} returned an unexpected body", status_code=resp.status_code, body={"raw": body})
    return body


class RazorpayGateway:
    """Thin async wrapper around the Razorpay REST API.

    REST calls go through httpx , the official SDK is kept as an alternate
    transport for refunds when the REST path misbehaves.
    """

    def __init__(self, key_id: str, key_secret: str, base_url: str,
                 timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None,
                 sdk_client: Any = None):
        self.key_id = key_id
        self._key_secret = key_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._sdk_client = sdk_client

    @classmethod
    def from_settings(cls) -> "RazorpayGateway":
        return cls(config_settings.RZPAY_KEY, config_settings.RZPAY_SECRET,
                   config_settings.RZPAY_GATEWAY_URL, timeout=config_settings.GATEWAY_TIMEOUT_SECONDS)

    @property
    def is_test_mode(self) -> bool:
        return self.key_id.startswith(TEST_KEY_PREFIX)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout,
                                 auth=(self.key_id, self._key_secret), transport=self._transport)

    def _sdk(self):
        if self._sdk_client is None:
            import razorpay

            self._sdk_client = razorpay.Client(auth=(self.key_id, self._key_secret))
        return self._sdk_client

    async def create_order(self, amount_minor: int, currency: str, receipt: Optional[str] = None,
                           notes: Optional[dict] = None, idempotency_key: Optional[str] = None) -> dict:
        """Create a gateway order (payment intent) the client side checkout pays against."""
        headers = {"Content-Type": "application/json"}
        if idempotency_key:
            headers["Idempotency-Key"] = str(idempotency_key)
        payload = {"amount": amount_minor, "currency": currency, "receipt": receipt, "notes": notes or {}}
        try:
            async with self._client() as client:
                resp = await client.post("/orders", json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise GatewayError(f"create_order transport error: {e!r}") from e
        if resp.is_error:
            raise _error_from_response(resp, "create_order")
        return _json_body(resp, "create_order")

    @retry_async(attempts=config_settings.GATEWAY_MAX_RETRIES, base_delay=config_settings.GATEWAY_BACKOFF_BASE)
    async def _get(self, path: str) -> httpx.Response:
        async with self._client() as client:
            resp = await client.get(path)
        if resp.status_code >= 500:
            resp.raise_for_status()
        return resp

    async def fetch_payment(self, payment_id: str) -> GatewayPayment:
        try:
            resp = await self._get(f"/payments/{payment_id}")
        except httpx.HTTPStatusError as e:
            raise _error_from_response(e.response, "fetch_payment") from e
        except httpx.HTTPError as e:
            raise GatewayError(f"fetch_payment transport error: {e!r}") from e
        if resp.is_error:
            raise _error_from_response(resp, "fetch_payment")
        data = _json_body(resp, "fetch_payment")
        return GatewayPayment(
            id=data.get("id", payment_id),
            status=data.get("status") or "unknown",
            amount=_as_int(data.get("amount")),
            amount_refunded=_as_int(data.get("amount_refunded")),
            method=data.get("method"),
            order_id=data.get("order_id"),
        )

    async def create_refund(self, payment_id: str, amount_minor: int, speed: Optional[str] = None,
                            notes: Optional[dict] = None) -> dict:
        body: Dict[str, Any] = {"amount": amount_minor}
        if speed:
            body["speed"] = speed
        if notes:
            body["notes"] = notes
        try:
            async with self._client() as client:
                resp = await client.post(f"/payments/{payment_id}/refund", json=body)
        except httpx.HTTPError as e:
            raise GatewayError(f"create_refund transport error: {e!r}") from e
        if resp.is_error:
            raise _error_from_response(resp, "create_refund")
        return _json_body(resp, "create_refund")

    async def create_instant_refund(self, payment_id: str, amount_minor: int, notes: Optional[dict] = None) -> dict:
        return await self.create_refund(payment_id, amount_minor, speed=INSTANT_REFUND_SPEED, notes=notes)

    async def create_refund_via_sdk(self, payment_id: str, amount_minor: int, notes: Optional[dict] = None) -> dict:
        data: Dict[str, Any] = {"amount": amount_minor}
        if notes:
            data["notes"] = notes
        from razorpay.errors import BadRequestError, GatewayError as SdkGatewayError, ServerError

        try:
            # sdk is blocking (requests based)
            return await asyncio.to_thread(self._sdk().payment.refund, payment_id, data)
        except BadRequestError as e:
            raise GatewayError(f"sdk refund rejected: {e}", status_code=400,
                               code="BAD_REQUEST_ERROR", description=str(e)) from e
        except (ServerError, SdkGatewayError) as e:
            raise GatewayError(f"sdk refund failed: {e}", status_code=502, description=str(e)) from e
        except requests.RequestException as e:
            raise GatewayError(f"sdk refund transport error: {e!r}") from e


_gateway: Optional[RazorpayGateway] = None


def get_gateway() -> RazorpayGateway:
    global _gateway
    if _gateway is None:
        _gateway = RazorpayGateway.from_settings()
        logger.info("gateway.client_ready", extra={"test_mode": _gateway.is_test_mode})
    return _gateway
