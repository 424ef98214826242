"""Tests for the M-Pesa Daraja gateway client."""

import base64
import json
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime
from decimal import Decimal

import httpx
import pytest

from paybill.core.errors import ProviderError, ValidationError
from paybill.services.mpesa_gateway import (
    EAT,
    AccessTokenCache,
    GatewayFailure,
    MpesaGateway,
    PushAccepted,
    StatusQueryResult,
    generate_password,
    generate_timestamp,
    normalize_phone,
    parse_transaction_time,
    to_shillings,
)

TOKEN_PATH = "/oauth/v1/generate"
PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
QUERY_PATH = "/mpesa/stkpushquery/v1/query"

ACCEPTED_PUSH = {
    "MerchantRequestID": "29115-34620561-1",
    "CheckoutRequestID": "ws_CO_191220191020363925",
    "ResponseCode": "0",
    "ResponseDescription": "Success. Request accepted for processing",
    "CustomerMessage": "Success. Request accepted for processing",
}


class DarajaStub:
    """Minimal Daraja behaviour behind httpx.MockTransport."""

    def __init__(self, push_responses=None, query_responses=None, token_status=200):
        self.requests: list[httpx.Request] = []
        self.token_calls = 0
        self.token_status = token_status
        self.push_responses = list(push_responses or [])
        self.query_responses = list(query_responses or [])

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == TOKEN_PATH:
            self.token_calls += 1
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"errorMessage": "Invalid credentials"})
            return httpx.Response(
                200, json={"access_token": f"tok-{self.token_calls}", "expires_in": "3599"}
            )
        if request.url.path == PUSH_PATH:
            return self._next(self.push_responses, request, httpx.Response(200, json=ACCEPTED_PUSH))
        if request.url.path == QUERY_PATH:
            return self._next(self.query_responses, request, httpx.Response(500, json={}))
        return httpx.Response(404, json={"errorMessage": "Unknown path"})

    @staticmethod
    def _next(queue, request, default):
        if not queue:
            return default
        item = queue.pop(0)
        return item(request) if callable(item) else item

    def calls_to(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]


def make_gateway(stub: DarajaStub, **kwargs) -> MpesaGateway:
    return MpesaGateway(
        consumer_key="consumer-key",
        consumer_secret="consumer-secret",
        shortcode="174379",
        passkey="test-passkey",
        callback_url="https://pay.example.com/api/payments/callback",
        base_url="https://sandbox.safaricom.co.ke",
        timeout=5,
        token_cache=kwargs.pop("token_cache", AccessTokenCache(600)),
        transport=httpx.MockTransport(stub),
        **kwargs,
    )


class TestNormalizePhone:
    @pytest.mark.parametrize(
        "raw",
        [
            "0712345678",
            "+254712345678",
            "254712345678",
            "712345678",
            "0712 345 678",
            "0712-345-678",
            "+254 (712) 345678",
        ],
    )
    def test_canonical_form(self, raw):
        assert normalize_phone(raw) == "254712345678"

    @pytest.mark.parametrize("raw", ["", "07123", "abc0712345678", "25471234567890", "1234567890123"])
    def test_invalid_numbers_rejected(self, raw):
        with pytest.raises(ValidationError):
            normalize_phone(raw)

    def test_custom_country_code(self):
        assert normalize_phone("0712345678", country_code="255") == "255712345678"


class TestRequestHelpers:
    def test_timestamp_is_east_africa_time(self):
        """Daraja timestamps are YYYYMMDDHHmmss in UTC+3."""
        assert generate_timestamp(datetime(2024, 1, 1, 9, 0, 0, tzinfo=UTC)) == "20240101120000"

    def test_timestamp_defaults_to_now(self):
        stamp = generate_timestamp()
        assert len(stamp) == 14
        assert stamp.isdigit()

    def test_password_encoding(self):
        password = generate_password("174379", "passkey", "20240101120000")
        assert base64.b64decode(password) == b"174379passkey20240101120000"

    def test_to_shillings_rounds_up(self):
        assert to_shillings(Decimal("500.00")) == 500
        assert to_shillings(Decimal("499.10")) == 500
        assert to_shillings(Decimal("0.01")) == 1

    def test_parse_transaction_time(self):
        parsed = parse_transaction_time(20240101120000)
        assert parsed == datetime(2024, 1, 1, 12, 0, 0, tzinfo=EAT)

    @pytest.mark.parametrize("value", [None, "", "not-a-date", 2024])
    def test_parse_transaction_time_tolerates_garbage(self, value):
        assert parse_transaction_time(value) is None


class TestAccessTokenCache:
    def test_caches_until_safety_margin(self):
        now = [1000.0]
        cache = AccessTokenCache(safety_margin_seconds=600, clock=lambda: now[0])
        calls = []

        def fetch():
            calls.append(1)
            return f"token-{len(calls)}", 3599

        assert cache.get_or_refresh(fetch) == "token-1"
        now[0] += 2998
        assert cache.get_or_refresh(fetch) == "token-1"
        now[0] += 1
        assert cache.get_or_refresh(fetch) == "token-2"
        assert len(calls) == 2

    def test_invalidate_only_matching_token(self):
        cache = AccessTokenCache()
        cache.get_or_refresh(lambda: ("current", 3599))

        cache.invalidate("stale")
        assert cache.peek() == "current"

        cache.invalidate("current")
        assert cache.peek() is None

    def test_fetch_error_leaves_cache_empty(self):
        cache = AccessTokenCache()

        def failing_fetch():
            raise ProviderError("token endpoint down")

        with pytest.raises(ProviderError):
            cache.get_or_refresh(failing_fetch)
        assert cache.peek() is None
        assert cache.get_or_refresh(lambda: ("fresh", 3599)) == "fresh"

    def test_concurrent_misses_fetch_once(self):
        """Many callers hitting an empty cache trigger a single fetch."""
        cache = AccessTokenCache()
        barrier = threading.Barrier(8)
        calls = []

        def slow_fetch():
            calls.append(1)
            time.sleep(0.05)
            return "shared-token", 3599

        def worker():
            barrier.wait()
            return cache.get_or_refresh(slow_fetch)

        with ThreadPoolExecutor(max_workers=8) as pool:
            tokens = list(pool.map(lambda _: worker(), range(8)))

        assert tokens == ["shared-token"] * 8
        assert len(calls) == 1


class TestAcquireAccessToken:
    def test_fetches_with_basic_auth(self):
        stub = DarajaStub()
        gateway = make_gateway(stub)

        assert gateway.acquire_access_token() == "tok-1"
        token_request = stub.calls_to(TOKEN_PATH)[0]
        assert token_request.url.params["grant_type"] == "client_credentials"
        expected = base64.b64encode(b"consumer-key:consumer-secret").decode()
        assert token_request.headers["Authorization"] == f"Basic {expected}"

    def test_token_reused_across_calls(self):
        stub = DarajaStub()
        gateway = make_gateway(stub)

        gateway.initiate_push("0712345678", Decimal("10.00"), "INV-1", "Test")
        gateway.initiate_push("0712345678", Decimal("10.00"), "INV-2", "Test")

        assert stub.token_calls == 1

    def test_token_failure_raises(self):
        gateway = make_gateway(DarajaStub(token_status=400))
        with pytest.raises(ProviderError, match="access token"):
            gateway.acquire_access_token()


class TestInitiatePush:
    def test_accepted(self):
        stub = DarajaStub()
        gateway = make_gateway(stub)

        result = gateway.initiate_push(
            "0712345678", Decimal("499.50"), "INV-ABCDEF12", "Payment for invoice #INV-1"
        )

        assert isinstance(result, PushAccepted)
        assert result.checkout_request_id == "ws_CO_191220191020363925"
        assert result.merchant_request_id == "29115-34620561-1"
        assert result.raw == ACCEPTED_PUSH

        request = stub.calls_to(PUSH_PATH)[0]
        assert request.headers["Authorization"] == "Bearer tok-1"
        body = json.loads(request.content)
        assert body["BusinessShortCode"] == "174379"
        assert body["TransactionType"] == "CustomerPayBillOnline"
        assert body["Amount"] == 500
        assert body["PartyA"] == "254712345678"
        assert body["PhoneNumber"] == "254712345678"
        assert body["PartyB"] == "174379"
        assert body["CallBackURL"] == "https://pay.example.com/api/payments/callback"
        assert body["AccountReference"] == "INV-ABCDEF12"
        assert base64.b64decode(body["Password"]) == f"174379test-passkey{body['Timestamp']}".encode()

    def test_invalid_phone_never_reaches_gateway(self):
        stub = DarajaStub()
        with pytest.raises(ValidationError):
            make_gateway(stub).initiate_push("12345", Decimal("10"), "INV-1", "Test")
        assert stub.requests == []

    def test_rejection_is_returned_not_raised(self):
        stub = DarajaStub(
            push_responses=[
                httpx.Response(
                    400,
                    json={
                        "requestId": "1234-5678",
                        "errorCode": "400.002.02",
                        "errorMessage": "Bad Request - Invalid PhoneNumber",
                    },
                )
            ]
        )

        result = make_gateway(stub).initiate_push("0712345678", Decimal("10"), "INV-1", "Test")

        assert isinstance(result, GatewayFailure)
        assert result.status_code == 400
        assert result.error_code == "400.002.02"
        assert result.error_message == "Bad Request - Invalid PhoneNumber"
        assert result.timed_out is False

    def test_non_zero_response_code_is_failure(self):
        stub = DarajaStub(
            push_responses=[
                httpx.Response(200, json={"ResponseCode": "1", "ResponseDescription": "Rejected"})
            ]
        )

        result = make_gateway(stub).initiate_push("0712345678", Decimal("10"), "INV-1", "Test")

        assert isinstance(result, GatewayFailure)
        assert result.error_code == "1"

    def test_timeout_is_flagged(self):
        def timeout(request):
            raise httpx.ReadTimeout("timed out", request=request)

        stub = DarajaStub(push_responses=[timeout])
        result = make_gateway(stub).initiate_push("0712345678", Decimal("10"), "INV-1", "Test")

        assert isinstance(result, GatewayFailure)
        assert result.timed_out is True

    def test_connection_error_is_failure(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        stub = DarajaStub(push_responses=[refuse])
        result = make_gateway(stub).initiate_push("0712345678", Decimal("10"), "INV-1", "Test")

        assert isinstance(result, GatewayFailure)
        assert result.timed_out is False
        assert result.message == "M-Pesa request failed"

    def test_malformed_body(self):
        stub = DarajaStub(push_responses=[httpx.Response(200, text="<html>gateway error</html>")])
        result = make_gateway(stub).initiate_push("0712345678", Decimal("10"), "INV-1", "Test")

        assert isinstance(result, GatewayFailure)
        assert result.message == "Malformed M-Pesa response"

    def test_token_failure_becomes_gateway_failure(self):
        stub = DarajaStub(token_status=500)
        result = make_gateway(stub).initiate_push("0712345678", Decimal("10"), "INV-1", "Test")

        assert isinstance(result, GatewayFailure)
        assert stub.calls_to(PUSH_PATH) == []

    def test_unauthorized_retries_once_with_fresh_token(self):
        def reject_first_token(request):
            if request.headers["Authorization"] == "Bearer tok-1":
                return httpx.Response(401, json={"errorCode": "404.001.03"})
            return httpx.Response(200, json=ACCEPTED_PUSH)

        stub = DarajaStub(push_responses=[reject_first_token, reject_first_token])
        result = make_gateway(stub).initiate_push("0712345678", Decimal("10"), "INV-1", "Test")

        assert isinstance(result, PushAccepted)
        assert stub.token_calls == 2
        assert [r.headers["Authorization"] for r in stub.calls_to(PUSH_PATH)] == [
            "Bearer tok-1",
            "Bearer tok-2",
        ]

    def test_unauthorized_twice_gives_up(self):
        def unauthorized(request):
            return httpx.Response(
                401, json={"errorCode": "404.001.03", "errorMessage": "Invalid Access Token"}
            )

        stub = DarajaStub(push_responses=[unauthorized, unauthorized, unauthorized])

        result = make_gateway(stub).initiate_push("0712345678", Decimal("10"), "INV-1", "Test")

        assert isinstance(result, GatewayFailure)
        assert result.status_code == 401
        assert len(stub.calls_to(PUSH_PATH)) == 2

    def test_invalid_token_error_code_retries_once(self):
        """Daraja may flag a stale token by errorCode instead of HTTP 401."""

        def reject_first_token(request):
            if request.headers["Authorization"] == "Bearer tok-1":
                return httpx.Response(
                    404, json={"errorCode": "404.001.03", "errorMessage": "Invalid Access Token"}
                )
            return httpx.Response(200, json=ACCEPTED_PUSH)

        stub = DarajaStub(push_responses=[reject_first_token, reject_first_token])
        result = make_gateway(stub).initiate_push("0712345678", Decimal("10"), "INV-1", "Test")

        assert isinstance(result, PushAccepted)
        assert stub.token_calls == 2

    def test_other_error_codes_are_not_retried(self):
        def bad_request(request):
            return httpx.Response(
                400, json={"errorCode": "400.002.02", "errorMessage": "Bad Request"}
            )

        stub = DarajaStub(push_responses=[bad_request, bad_request])
        result = make_gateway(stub).initiate_push("0712345678", Decimal("10"), "INV-1", "Test")

        assert isinstance(result, GatewayFailure)
        assert stub.token_calls == 1
        assert len(stub.calls_to(PUSH_PATH)) == 1


class TestQueryStatus:
    def test_completed(self):
        stub = DarajaStub(
            query_responses=[
                httpx.Response(
                    200,
                    json={
                        "ResponseCode": "0",
                        "ResponseDescription": "The service request has been accepted successsfully",
                        "MerchantRequestID": "29115-34620561-1",
                        "CheckoutRequestID": "ws_CO_1",
                        "ResultCode": "0",
                        "ResultDesc": "The service request is processed successfully.",
                    },
                )
            ]
        )

        result = make_gateway(stub).query_status("ws_CO_1")

        assert isinstance(result, StatusQueryResult)
        assert result.checkout_request_id == "ws_CO_1"
        assert result.result_code == "0"
        body = json.loads(stub.calls_to(QUERY_PATH)[0].content)
        assert body["CheckoutRequestID"] == "ws_CO_1"
        assert body["BusinessShortCode"] == "174379"

    def test_numeric_result_code_is_stringified(self):
        stub = DarajaStub(
            query_responses=[
                httpx.Response(200, json={"ResultCode": 1032, "ResultDesc": "Request cancelled by user"})
            ]
        )

        result = make_gateway(stub).query_status("ws_CO_2")

        assert isinstance(result, StatusQueryResult)
        assert result.checkout_request_id == "ws_CO_2"
        assert result.result_code == "1032"

    def test_still_processing(self):
        stub = DarajaStub(
            query_responses=[
                httpx.Response(
                    500,
                    json={
                        "requestId": "abc",
                        "errorCode": "500.001.1001",
                        "errorMessage": "The transaction is being processed",
                    },
                )
            ]
        )

        result = make_gateway(stub).query_status("ws_CO_3")

        assert isinstance(result, GatewayFailure)
        assert result.error_code == "500.001.1001"
