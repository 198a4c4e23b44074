import base64
import json
import logging
import re
import secrets
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Optional

import httpx

from collospot.core.config import Settings, get_settings
from collospot.core.exceptions import (
    CallbackParseError,
    GatewayRejected,
    GatewayUnavailable,
    ValidationError,
)
from collospot.core.logging import mask_phone
from collospot.utils.cache import get_cached, invalidate, set_cached


logger = logging.getLogger(__name__)

COUNTRY_CODE = "254"
# STK query answers HTTP 500 with this code while the customer has not acted yet.
QUERY_PROCESSING_CODE = "500.001.1001"
_TOKEN_CACHE_KEY = "mpesa:access_token"


def normalize_phone(phone: str | None) -> str:
    """Canonical Safaricom MSISDN: digits only, ``254`` prefix, no plus sign."""
    digits = re.sub(r"\D", "", str(phone or ""))
    if not digits:
        raise ValidationError("Valid phone number required")
    if digits.startswith("0"):
        digits = COUNTRY_CODE + digits[1:]
    elif not digits.startswith(COUNTRY_CODE):
        digits = COUNTRY_CODE + digits
    if len(digits) != 12:
        raise ValidationError("Valid phone number required")
    return digits


@dataclass
class PushResult:
    correlation_id: str
    merchant_id: str | None = None
    customer_message: str = ""


@dataclass
class ParsedResult:
    correlation_id: str
    success: bool
    result_code: str
    result_desc: str = ""
    receipt_number: str | None = None
    amount: Decimal | None = None
    phone: str | None = None


def _coerce_result_code(value: Any) -> int:
    if isinstance(value, bool):
        raise CallbackParseError("ResultCode must be numeric")
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        raise CallbackParseError("ResultCode must be numeric")


def _metadata_items(callback: dict) -> dict:
    metadata = callback.get("CallbackMetadata") or {}
    items = metadata.get("Item") if isinstance(metadata, dict) else None
    out = {}
    for item in items or []:
        if isinstance(item, dict) and item.get("Name"):
            out[str(item["Name"])] = item.get("Value")
    return out


def parse_callback(raw_payload: Any) -> ParsedResult:
    if isinstance(raw_payload, (bytes, str)):
        try:
            raw_payload = json.loads(raw_payload)
        except ValueError as exc:
            raise CallbackParseError("Callback body is not valid JSON") from exc
    if not isinstance(raw_payload, dict):
        raise CallbackParseError("Callback body must be a JSON object")

    body = raw_payload.get("Body")
    callback = body.get("stkCallback") if isinstance(body, dict) else None
    if not isinstance(callback, dict):
        raise CallbackParseError("Missing Body.stkCallback")

    correlation_id = str(callback.get("CheckoutRequestID") or "").strip()
    if not correlation_id:
        raise CallbackParseError("Missing CheckoutRequestID")
    if "ResultCode" not in callback:
        raise CallbackParseError("Missing ResultCode")
    code = _coerce_result_code(callback.get("ResultCode"))

    meta = _metadata_items(callback) if code == 0 else {}
    amount = None
    if meta.get("Amount") is not None:
        try:
            amount = Decimal(str(meta["Amount"]))
        except InvalidOperation:
            logger.warning("Ignoring non-numeric callback Amount for %s", correlation_id)
    receipt = meta.get("MpesaReceiptNumber")
    phone = meta.get("PhoneNumber")
    return ParsedResult(
        correlation_id=correlation_id,
        success=code == 0,
        result_code=str(code),
        result_desc=str(callback.get("ResultDesc") or "").strip()[:255],
        receipt_number=str(receipt) if receipt not in (None, "") else None,
        amount=amount,
        phone=str(phone) if phone not in (None, "") else None,
    )


def parse_query_response(payload: dict) -> Optional[ParsedResult]:
    if str(payload.get("errorCode") or "") == QUERY_PROCESSING_CODE:
        return None
    if "ResultCode" not in payload:
        return None
    code = _coerce_result_code(payload.get("ResultCode"))
    return ParsedResult(
        correlation_id=str(payload.get("CheckoutRequestID") or ""),
        success=code == 0,
        result_code=str(code),
        result_desc=str(payload.get("ResultDesc") or "").strip()[:255],
    )


def _extract_error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        data = {}
    if isinstance(data, dict):
        for key in ("errorMessage", "ResponseDescription", "ResultDesc", "message"):
            value = data.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    text = (response.text or "").strip()
    return text[:300] if text else f"HTTP {response.status_code}"


def _is_invalid_token(response: httpx.Response) -> bool:
    # Daraja reports an expired bearer token as 404.001.03 instead of 401.
    if response.status_code != 404:
        return False
    try:
        data = response.json()
    except ValueError:
        return False
    return isinstance(data, dict) and str(data.get("errorCode") or "").startswith("404.001.03")


class MpesaGateway:
    """Daraja STK push client."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.base_url = self.settings.resolved_mpesa_base_url
        self.shortcode = self.settings.mpesa_shortcode
        self.timeout = self.settings.mpesa_timeout_seconds
        self.retry_count = self.settings.mpesa_retry_count

    def _timestamp(self) -> str:
        return datetime.now().strftime("%Y%m%d%H%M%S")

    def _password(self, timestamp: str) -> str:
        raw = f"{self.shortcode}{self.settings.mpesa_passkey}{timestamp}"
        return base64.b64encode(raw.encode()).decode()

    def _basic_auth(self) -> str:
        token = f"{self.settings.mpesa_consumer_key}:{self.settings.mpesa_consumer_secret}"
        return base64.b64encode(token.encode()).decode()

    def _access_token(self) -> str:
        cached = get_cached(_TOKEN_CACHE_KEY)
        if cached:
            return cached
        try:
            data = self._request(
                "GET",
                "/oauth/v1/generate?grant_type=client_credentials",
                headers={"Authorization": f"Basic {self._basic_auth()}"},
            )
        except GatewayRejected as exc:
            # Daraja answers bad consumer keys with a 400; the push itself was never judged.
            logger.error("M-Pesa OAuth rejected our credentials: %s", exc.message)
            raise GatewayUnavailable(
                "M-Pesa rejected our credentials.", status_code=exc.provider_status, raw=exc.raw
            ) from exc
        token = data.get("access_token")
        if not token:
            raise GatewayUnavailable("M-Pesa returned no access token.")
        try:
            expires_in = int(data.get("expires_in") or 3599)
        except (TypeError, ValueError):
            expires_in = 3599
        set_cached(_TOKEN_CACHE_KEY, token, ttl_seconds=max(60, expires_in - 60))
        return token

    def _request(
        self,
        method: str,
        path: str,
        payload: dict | None = None,
        *,
        headers: dict | None = None,
        retry_count_override: int | None = None,
        raise_for_status: bool = True,
    ) -> dict:
        url = f"{self.base_url}{path}"
        retry_count = self.retry_count if retry_count_override is None else max(0, int(retry_count_override))
        last_exc = None
        for attempt in range(retry_count + 1):
            start = time.time()
            try:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.request(method, url, json=payload, headers=headers)
            except (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError) as exc:
                last_exc = GatewayUnavailable("Unable to reach M-Pesa.", raw=str(exc))
                if attempt < retry_count:
                    time.sleep(0.5 * (attempt + 1))
                    continue
                raise last_exc from exc

            duration_ms = round((time.time() - start) * 1000, 2)
            logger.info("M-Pesa API %s %s status=%s duration=%sms", method, path.split("?")[0], response.status_code, duration_ms)

            if response.status_code in (401, 403) or _is_invalid_token(response):
                invalidate(_TOKEN_CACHE_KEY)
                raise GatewayUnavailable(
                    "M-Pesa rejected our credentials.", status_code=response.status_code, raw=response.text
                )
            if (response.status_code >= 500 or response.status_code == 429) and raise_for_status:
                last_exc = GatewayUnavailable(
                    _extract_error_message(response), status_code=response.status_code, raw=response.text
                )
                if attempt < retry_count:
                    time.sleep(0.5 * (attempt + 1))
                    continue
                raise last_exc
            if response.status_code >= 400 and raise_for_status:
                raise GatewayRejected(
                    _extract_error_message(response), status_code=response.status_code, raw=response.text
                )
            try:
                data = response.json()
            except ValueError as exc:
                raise GatewayUnavailable(
                    "M-Pesa returned invalid JSON response.", status_code=response.status_code, raw=response.text
                ) from exc
            if not isinstance(data, dict):
                raise GatewayUnavailable("M-Pesa returned an unexpected response.", status_code=response.status_code)
            data["__status__"] = response.status_code
            return data
        raise last_exc

    def _bearer(self) -> dict:
        return {
            "Authorization": f"Bearer {self._access_token()}",
            "Content-Type": "application/json",
        }

    def _callback_url(self) -> str:
        url = self.settings.mpesa_callback_url
        token = self.settings.mpesa_callback_token
        if not token:
            return url
        return str(httpx.URL(url).copy_merge_params({"token": token}))

    def initiate_push(self, phone: str, amount: Decimal, reference: str, description: str) -> PushResult:
        msisdn = normalize_phone(phone)
        timestamp = self._timestamp()
        payload = {
            "BusinessShortCode": self.shortcode,
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": int(Decimal(amount).quantize(Decimal("1"))),
            "PartyA": msisdn,
            "PartyB": self.shortcode,
            "PhoneNumber": msisdn,
            "CallBackURL": self._callback_url(),
            "AccountReference": reference[:12],
            "TransactionDesc": description[:13],
        }
        # A retried push would prompt the customer twice.
        data = self._request(
            "POST",
            "/mpesa/stkpush/v1/processrequest",
            payload,
            headers=self._bearer(),
            retry_count_override=0,
        )
        if str(data.get("ResponseCode", "")).strip() != "0" or not data.get("CheckoutRequestID"):
            raise GatewayRejected(
                str(data.get("ResponseDescription") or data.get("errorMessage") or "STK push rejected"),
                raw=json.dumps(data, default=str),
            )
        logger.info("STK push accepted for %s checkout=%s", mask_phone(msisdn), data["CheckoutRequestID"])
        return PushResult(
            correlation_id=str(data["CheckoutRequestID"]),
            merchant_id=data.get("MerchantRequestID"),
            customer_message=str(data.get("CustomerMessage") or data.get("ResponseDescription") or ""),
        )

    def query_push(self, correlation_id: str) -> Optional[ParsedResult]:
        timestamp = self._timestamp()
        payload = {
            "BusinessShortCode": self.shortcode,
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": correlation_id,
        }
        data = self._request(
            "POST",
            "/mpesa/stkpushquery/v1/query",
            payload,
            headers=self._bearer(),
            raise_for_status=False,
        )
        status = data.pop("__status__", 200)
        parsed = parse_query_response(data)
        if parsed is not None:
            parsed.correlation_id = parsed.correlation_id or correlation_id
            return parsed
        if str(data.get("errorCode") or "") == QUERY_PROCESSING_CODE:
            return None
        if status >= 500 or status == 429:
            raise GatewayUnavailable(str(data.get("errorMessage") or "STK query failed"), status_code=status)
        if status >= 400:
            raise GatewayRejected(str(data.get("errorMessage") or "STK query rejected"), status_code=status)
        return None

    def parse_callback(self, raw_payload: Any) -> ParsedResult:
        return parse_callback(raw_payload)


class SandboxMpesaGateway:
    """
    Fake gateway for development and demos.

    Every push is accepted and a callback is delivered to the bound handler after
    ``delay_seconds`` on a timer thread. Subscriber numbers starting with ``0000``
    simulate a payment the customer declined.
    """

    FAIL_PREFIX = COUNTRY_CODE + "0000"

    def __init__(self, delay_seconds: float = 10.0, max_outcomes: int = 1000):
        self.delay_seconds = delay_seconds
        self._handler: Callable[[dict], Any] | None = None
        self.max_outcomes = max_outcomes
        # Oldest pushes fall off; querying one then fails like any unknown id.
        self._outcomes: OrderedDict[str, dict] = OrderedDict()
        self._lock = threading.Lock()

    def bind(self, handler: Callable[[dict], Any]) -> None:
        self._handler = handler

    def _ref(self, prefix: str) -> str:
        return f"{prefix}_{int(time.time())}_{secrets.token_hex(4)}"

    def build_callback(self, correlation_id: str, merchant_id: str, *, success: bool, amount: Decimal, phone: str) -> dict:
        callback = {
            "MerchantRequestID": merchant_id,
            "CheckoutRequestID": correlation_id,
            "ResultCode": 0 if success else 1032,
            "ResultDesc": "The service request is processed successfully." if success else "Request cancelled by user",
        }
        if success:
            callback["CallbackMetadata"] = {
                "Item": [
                    {"Name": "Amount", "Value": float(amount)},
                    {"Name": "MpesaReceiptNumber", "Value": f"SBX{secrets.token_hex(4).upper()}"},
                    {"Name": "PhoneNumber", "Value": int(phone)},
                ]
            }
        return {"Body": {"stkCallback": callback}}

    def initiate_push(self, phone: str, amount: Decimal, reference: str, description: str) -> PushResult:
        msisdn = normalize_phone(phone)
        correlation_id = self._ref("ws_CO_SANDBOX")
        merchant_id = self._ref("SBX_MR")
        payload = self.build_callback(
            correlation_id,
            merchant_id,
            success=not msisdn.startswith(self.FAIL_PREFIX),
            amount=Decimal(amount),
            phone=msisdn,
        )
        with self._lock:
            self._outcomes[correlation_id] = payload
            while len(self._outcomes) > self.max_outcomes:
                self._outcomes.popitem(last=False)
        timer = threading.Timer(self.delay_seconds, self._deliver, args=(payload,))
        timer.daemon = True
        timer.start()
        logger.info("Sandbox STK push %s for %s, callback in %ss", correlation_id, mask_phone(msisdn), self.delay_seconds)
        return PushResult(
            correlation_id=correlation_id,
            merchant_id=merchant_id,
            customer_message="Success. Request accepted for processing",
        )

    def _deliver(self, payload: dict) -> None:
        if self._handler is None:
            logger.warning("Sandbox callback dropped: no handler bound")
            return
        try:
            self._handler(payload)
        except Exception:
            logger.exception("Sandbox callback delivery failed")

    def query_push(self, correlation_id: str) -> Optional[ParsedResult]:
        with self._lock:
            payload = self._outcomes.get(correlation_id)
        if payload is None:
            raise GatewayRejected("Unknown CheckoutRequestID")
        return parse_callback(payload)

    def parse_callback(self, raw_payload: Any) -> ParsedResult:
        return parse_callback(raw_payload)
