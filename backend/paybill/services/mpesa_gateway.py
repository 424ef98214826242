"""M-Pesa Daraja gateway client.

Daraja uses an OAuth client-credentials token plus a per-request password:
1. GET /oauth/v1/generate with HTTP Basic (consumer key/secret) -> bearer token
2. POST /mpesa/stkpush/v1/processrequest -> push prompt on the payer's phone
3. POST /mpesa/stkpushquery/v1/query -> poll the outcome of a prior push

Ordinary rejections are returned as ``GatewayFailure`` values, never raised.
"""

import base64
import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import ROUND_CEILING, Decimal
from functools import lru_cache
from threading import Lock
from typing import Any

import httpx

from paybill.core.config import settings
from paybill.core.errors import ProviderError, ValidationError

logger = logging.getLogger(__name__)

# Daraja timestamps and TransactionDate values are in East Africa Time.
EAT = timezone(timedelta(hours=3), name="EAT")

DEFAULT_TOKEN_LIFETIME_SECONDS = 3599
# Daraja reports a stale bearer token with this code, not always with HTTP 401.
INVALID_TOKEN_ERROR_CODE = "404.001.03"
KENYAN_SUBSCRIBER_DIGITS = 9


@dataclass
class PushAccepted:
    """The gateway accepted the push request and will report the outcome later."""

    checkout_request_id: str
    merchant_request_id: str | None
    response_description: str | None = None
    customer_message: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class StatusQueryResult:
    """Outcome reported by the status query endpoint."""

    checkout_request_id: str
    result_code: str
    result_desc: str
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class GatewayFailure:
    """The gateway rejected the call, was unreachable, or answered something unusable."""

    message: str
    error: Any = None
    status_code: int | None = None
    timed_out: bool = False

    @property
    def error_code(self) -> str | None:
        if isinstance(self.error, dict):
            code = self.error.get("errorCode") or self.error.get("ResponseCode")
            return str(code) if code is not None else None
        return None

    @property
    def error_message(self) -> str:
        if isinstance(self.error, dict):
            return str(
                self.error.get("errorMessage")
                or self.error.get("ResponseDescription")
                or self.message
            )
        return self.message


PushResult = PushAccepted | GatewayFailure
QueryResult = StatusQueryResult | GatewayFailure


def normalize_phone(raw: str, country_code: str | None = None) -> str:
    """Normalize a phone number to the canonical ``2547XXXXXXXX`` form.

    A leading ``+`` is stripped, a leading ``0`` is replaced with the country
    code, a bare subscriber number gets the country code prepended, and
    numbers that already carry the country code pass through unchanged.
    """
    prefix = country_code or settings.MPESA_COUNTRY_CODE
    number = re.sub(r"[\s\-().]", "", raw or "")

    if number.startswith("+"):
        number = number[1:]
    if not number.isdigit():
        raise ValidationError("Phone number must contain digits only", {"phone_number": raw})

    if number.startswith("0"):
        number = prefix + number[1:]
    elif not number.startswith(prefix) and len(number) == KENYAN_SUBSCRIBER_DIGITS:
        number = prefix + number

    if len(number) != len(prefix) + KENYAN_SUBSCRIBER_DIGITS or not number.startswith(prefix):
        raise ValidationError("Invalid phone number", {"phone_number": raw})
    return number


def generate_timestamp(now: datetime | None = None) -> str:
    """Timestamp in Daraja's ``YYYYMMDDHHmmss`` format (East Africa Time)."""
    moment = now.astimezone(EAT) if now else datetime.now(EAT)
    return moment.strftime("%Y%m%d%H%M%S")


def generate_password(shortcode: str, passkey: str, timestamp: str) -> str:
    """base64(shortcode + passkey + timestamp), as required by the STK endpoints."""
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode()).decode("utf-8")


def parse_transaction_time(value: Any) -> datetime | None:
    """Parse a Daraja ``TransactionDate`` (e.g. 20240101120000) into an aware datetime."""
    if value in (None, ""):
        return None
    try:
        return datetime.strptime(str(value), "%Y%m%d%H%M%S").replace(tzinfo=EAT)
    except ValueError:
        logger.warning("Unparseable M-Pesa transaction date: %r", value)
        return None


def to_shillings(amount: Decimal) -> int:
    """Daraja only accepts whole amounts; round up so the invoice is never short."""
    return int(Decimal(amount).to_integral_value(rounding=ROUND_CEILING))


class AccessTokenCache:
    """Process-scoped bearer token cache with single-flight refresh.

    While the cached token is valid, readers never block. On a miss exactly one
    caller runs the fetch while concurrent callers wait on the same lock and
    then pick up the refreshed value.
    """

    def __init__(
        self,
        safety_margin_seconds: int = 600,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.safety_margin_seconds = safety_margin_seconds
        self._clock = clock
        self._lock = Lock()
        # (token, expires_at) swapped as one tuple so readers see a consistent pair
        self._entry: tuple[str, float] | None = None

    def peek(self) -> str | None:
        """Return the cached token if it is still valid, without refreshing."""
        entry = self._entry
        if entry is not None and self._clock() < entry[1]:
            return entry[0]
        return None

    def get_or_refresh(self, fetch: Callable[[], tuple[str, int]]) -> str:
        token = self.peek()
        if token:
            return token

        with self._lock:
            # Another caller may have refreshed while we waited for the lock.
            token = self.peek()
            if token:
                return token

            token, expires_in = fetch()
            self._entry = (token, self._clock() + expires_in - self.safety_margin_seconds)
            return token

    def invalidate(self, token: str | None = None) -> None:
        """Drop the cached token (only if it is still ``token``, when given)."""
        with self._lock:
            if self._entry is not None and (token is None or self._entry[0] == token):
                self._entry = None


class MpesaGateway:
    """Client for the Daraja STK push and status query APIs."""

    def __init__(
        self,
        consumer_key: str | None = None,
        consumer_secret: str | None = None,
        shortcode: str | None = None,
        passkey: str | None = None,
        callback_url: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        token_cache: AccessTokenCache | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.consumer_key = consumer_key or settings.MPESA_CONSUMER_KEY
        self.consumer_secret = consumer_secret or settings.MPESA_CONSUMER_SECRET
        self.shortcode = shortcode or settings.MPESA_SHORTCODE
        self.passkey = passkey or settings.MPESA_PASSKEY
        self.callback_url = callback_url or settings.MPESA_CALLBACK_URL
        self.base_url = (base_url or settings.mpesa_base_url).rstrip("/")
        self.timeout = timeout or settings.MPESA_TIMEOUT_SECONDS
        self.tokens = token_cache or AccessTokenCache(settings.MPESA_TOKEN_SAFETY_MARGIN_SECONDS)
        self._transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(base_url=self.base_url, timeout=self.timeout, transport=self._transport)

    # ===== Credentials =====

    def acquire_access_token(self) -> str:
        """Return a cached bearer token, fetching a new one on a cache miss.

        Raises ProviderError when the token endpoint fails.
        """
        return self.tokens.get_or_refresh(self._fetch_access_token)

    def _fetch_access_token(self) -> tuple[str, int]:
        logger.info("Requesting new M-Pesa access token")
        try:
            with self._client() as client:
                resp = client.get(
                    "/oauth/v1/generate",
                    params={"grant_type": "client_credentials"},
                    auth=(self.consumer_key, self.consumer_secret),
                )
        except httpx.TimeoutException as exc:
            raise ProviderError(
                "Timed out generating M-Pesa access token", str(exc), timed_out=True
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderError("Failed to generate M-Pesa access token", str(exc)) from exc

        body = _json_or_none(resp)
        if resp.status_code != 200 or not body or not body.get("access_token"):
            logger.error("M-Pesa token request failed: %s %s", resp.status_code, resp.text[:500])
            raise ProviderError("Failed to generate M-Pesa access token", body or resp.text[:500])

        try:
            expires_in = int(body.get("expires_in") or DEFAULT_TOKEN_LIFETIME_SECONDS)
        except (TypeError, ValueError):
            expires_in = DEFAULT_TOKEN_LIFETIME_SECONDS
        return str(body["access_token"]), expires_in

    # ===== STK push =====

    def initiate_push(
        self,
        phone: str,
        amount: Decimal,
        reference: str,
        description: str,
    ) -> PushResult:
        """Send an STK push prompt to ``phone`` for ``amount``."""
        phone_number = normalize_phone(phone)
        timestamp = generate_timestamp()
        payload = {
            "BusinessShortCode": self.shortcode,
            "Password": generate_password(self.shortcode, self.passkey, timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": to_shillings(amount),
            "PartyA": phone_number,
            "PartyB": self.shortcode,
            "PhoneNumber": phone_number,
            "CallBackURL": self.callback_url,
            "AccountReference": reference[:12],
            "TransactionDesc": description[:100],
        }

        outcome = self._post("/mpesa/stkpush/v1/processrequest", payload)
        if isinstance(outcome, GatewayFailure):
            logger.warning("STK push failed for %s: %s", reference, outcome.message)
            return outcome

        status_code, body = outcome
        if (
            status_code == 200
            and str(body.get("ResponseCode")) == "0"
            and body.get("CheckoutRequestID")
        ):
            return PushAccepted(
                checkout_request_id=str(body["CheckoutRequestID"]),
                merchant_request_id=body.get("MerchantRequestID"),
                response_description=body.get("ResponseDescription"),
                customer_message=body.get("CustomerMessage"),
                raw=body,
            )

        logger.warning("STK push rejected for %s: %s", reference, body)
        return GatewayFailure("STK push rejected", error=body, status_code=status_code)

    def query_status(self, checkout_request_id: str) -> QueryResult:
        """Ask the gateway for the outcome of a prior push."""
        timestamp = generate_timestamp()
        payload = {
            "BusinessShortCode": self.shortcode,
            "Password": generate_password(self.shortcode, self.passkey, timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }

        outcome = self._post("/mpesa/stkpushquery/v1/query", payload)
        if isinstance(outcome, GatewayFailure):
            logger.warning("Status query failed for %s: %s", checkout_request_id, outcome.message)
            return outcome

        status_code, body = outcome
        if status_code == 200 and body.get("ResultCode") is not None:
            return StatusQueryResult(
                checkout_request_id=str(body.get("CheckoutRequestID") or checkout_request_id),
                result_code=str(body["ResultCode"]),
                result_desc=str(body.get("ResultDesc") or ""),
                raw=body,
            )

        # e.g. 500.001.1001 "The transaction is being processed"
        return GatewayFailure("Status query rejected", error=body, status_code=status_code)

    # ===== Transport =====

    def _post(self, endpoint: str, payload: dict[str, Any]) -> tuple[int, dict[str, Any]] | GatewayFailure:
        """POST with a bearer token, re-acquiring the token once if it is rejected."""
        try:
            token = self.acquire_access_token()
            resp = self._send(endpoint, payload, token)
            if _token_rejected(resp):
                logger.info("M-Pesa rejected the access token, re-acquiring once")
                self.tokens.invalidate(token)
                token = self.acquire_access_token()
                resp = self._send(endpoint, payload, token)
        except ProviderError as exc:
            return GatewayFailure(exc.message, error=exc.details, timed_out=exc.timed_out)
        except httpx.TimeoutException as exc:
            return GatewayFailure("M-Pesa request timed out", error=str(exc), timed_out=True)
        except httpx.HTTPError as exc:
            return GatewayFailure("M-Pesa request failed", error=str(exc))

        body = _json_or_none(resp)
        if body is None:
            return GatewayFailure(
                "Malformed M-Pesa response", error=resp.text[:500], status_code=resp.status_code
            )
        return resp.status_code, body

    def _send(self, endpoint: str, payload: dict[str, Any], token: str) -> httpx.Response:
        with self._client() as client:
            return client.post(
                endpoint,
                json=payload,
                headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
            )


def _token_rejected(resp: httpx.Response) -> bool:
    if resp.status_code == 401:
        return True
    body = _json_or_none(resp)
    return body is not None and str(body.get("errorCode")) == INVALID_TOKEN_ERROR_CODE


def _json_or_none(resp: httpx.Response) -> dict[str, Any] | None:
    try:
        body = resp.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


@lru_cache(maxsize=1)
def get_mpesa_gateway() -> MpesaGateway:
    """Process-wide gateway instance, created on first use (FastAPI dependency)."""
    return MpesaGateway()
