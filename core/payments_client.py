"""
core/payments_client.py — 支付微服务客户端

每次调用都会附带：
    Authorization: Bearer <新签发的 M2M 凭证>
    x-app-id: <package id>
超时或连接失败抛 GatewayTimeout / GatewayUnavailable，网关 4xx 抛 GatewayRejected。
进程启动时构造一次，再显式注入到 BillingService。
"""

import re
import time
from typing import Any, Dict, Optional

import requests

from core import m2m
from core.config import cfg
from core.errors import GatewayRejected, GatewayTimeout, GatewayUnavailable
from core.events import E, log_event
from core.log import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10
DEFAULT_PHONE = "9999999999"


def format_phone_number(phone: str) -> str:
    """规整为 10 位、以 6-9 开头的手机号；无法识别时返回占位号码。"""
    digits = re.sub(r"\D", "", str(phone or ""))
    if not digits:
        return DEFAULT_PHONE
    if len(digits) == 12 and digits.startswith("91"):
        digits = digits[2:]
    if len(digits) == 10 and digits[0] in "6789":
        return digits
    logger.warning("手机号格式无效，使用默认号码: %s", phone)
    return DEFAULT_PHONE


def _unwrap(payload: Any) -> Dict:
    """网关响应通常是 {success, data, message}，这里取出 data。"""
    if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
        return payload["data"]
    if isinstance(payload, dict):
        return payload
    return {}


def _remote_message(resp: requests.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return str(resp.text or "")[:200]
    if not isinstance(body, dict):
        return ""
    error = body.get("error")
    if isinstance(error, dict):
        return str(error.get("message") or "")
    if isinstance(error, list) and error:
        return str(error[0])
    return str(body.get("message") or error or "")


class PaymentsClient:
    def __init__(
        self,
        base_url: str,
        package_id: str,
        m2m_secret: str,
        issuer: str = "core",
        audience: str = "payments",
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        http: Optional[requests.Session] = None,
    ):
        if not base_url or not package_id or not m2m_secret:
            raise ValueError("支付微服务配置不完整: base_url / package_id / m2m secret 均为必填")
        self.base_url = str(base_url).rstrip("/")
        self.package_id = str(package_id)
        self.m2m_secret = str(m2m_secret)
        self.issuer = issuer
        self.audience = audience
        self.timeout = float(timeout or DEFAULT_TIMEOUT_SECONDS)
        self.http = http or requests.Session()

    @classmethod
    def from_config(cls) -> "PaymentsClient":
        return cls(
            base_url=str(cfg.get("payments.base_url", "") or ""),
            package_id=str(cfg.get("payments.package_id", "") or ""),
            m2m_secret=str(cfg.get("payments.m2m.secret", "") or ""),
            issuer=str(cfg.get("payments.m2m.core_issuer", "core")),
            audience=str(cfg.get("payments.m2m.payments_audience", "payments")),
            timeout=cfg.get_int("payments.timeout_seconds", DEFAULT_TIMEOUT_SECONDS),
        )

    def headers(self) -> Dict[str, str]:
        token = m2m.mint(self.issuer, self.audience, secret=self.m2m_secret)
        return {
            "Authorization": f"Bearer {token}",
            "x-app-id": self.package_id,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _request(self, method: str, path: str, json: Dict = None, params: Dict = None) -> Dict:
        url = f"{self.base_url}{path}"
        started = time.perf_counter()
        log_event(logger, E.GATEWAY_REQUEST, level="debug", method=method, path=path)
        try:
            resp = self.http.request(
                method,
                url,
                json=json,
                params=params,
                headers=self.headers(),
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            log_event(logger, E.GATEWAY_TIMEOUT, level="warning", method=method, path=path, timeout=self.timeout)
            raise GatewayTimeout(detail=str(e))
        except requests.RequestException as e:
            log_event(logger, E.GATEWAY_UNAVAILABLE, level="warning", method=method, path=path, error=e)
            raise GatewayUnavailable(detail=str(e))

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        status_code = int(resp.status_code or 0)
        if status_code >= 500:
            log_event(logger, E.GATEWAY_UNAVAILABLE, level="warning", method=method, path=path, status=status_code)
            raise GatewayUnavailable(detail=f"http_{status_code}")
        if status_code >= 400:
            remote = _remote_message(resp)
            log_event(logger, E.GATEWAY_REJECTED, level="warning", method=method, path=path, status=status_code, remote=remote)
            raise GatewayRejected(remote or "", detail=f"http_{status_code}", remote_status=status_code)

        try:
            body = resp.json()
        except ValueError:
            log_event(logger, E.GATEWAY_UNAVAILABLE, level="warning", method=method, path=path, reason="non_json_response")
            raise GatewayUnavailable(detail="non_json_response")

        log_event(logger, E.GATEWAY_RESPONSE, level="debug", method=method, path=path, status=status_code, elapsed_ms=elapsed_ms)
        return body if isinstance(body, dict) else {"data": body}

    def create_order(self, user_id: str, amount: int, currency: str, payment_context: Dict = None) -> Dict:
        body = self._request(
            "POST",
            "/order",
            json={
                "userId": user_id,
                "amount": int(amount),
                "currency": currency,
                "paymentContext": payment_context or {},
            },
        )
        data = _unwrap(body)
        order_id = str(data.get("orderId") or data.get("id") or "")
        if not order_id:
            raise GatewayUnavailable(detail="create_order: missing orderId")
        return {
            "payment_order_id": order_id,
            "gateway_order_id": str(data.get("razorpayOrderId") or data.get("gatewayOrderId") or "") or None,
            "gateway_key": str(data.get("razorpayKey") or data.get("key") or ""),
            "raw": data,
        }

    def create_subscription(self, user_id: str, plan_id: str, payment_context: Dict = None) -> Dict:
        context = dict(payment_context or {})
        metadata = dict(context.get("metadata") or {})
        metadata["userPhone"] = format_phone_number(metadata.get("userPhone"))
        context["metadata"] = metadata
        body = self._request(
            "POST",
            "/subscription",
            json={"userId": user_id, "planId": plan_id, "paymentContext": context},
        )
        data = _unwrap(body)
        subscription_id = str(data.get("subscriptionId") or data.get("id") or "")
        if not subscription_id:
            raise GatewayUnavailable(detail="create_subscription: missing subscriptionId")
        return {
            "payment_subscription_id": subscription_id,
            "gateway_subscription_id": str(
                data.get("razorpaySubscriptionId") or data.get("gatewaySubscriptionId") or ""
            ) or None,
            "short_url": str(data.get("shortUrl") or ""),
            "gateway_key": str(data.get("razorpayKey") or data.get("key") or ""),
            "raw": data,
        }

    def cancel_subscription(
        self,
        user_id: str,
        payment_subscription_id: str,
        gateway_subscription_id: str = "",
        reason: str = "",
    ) -> Dict:
        body = self._request(
            "POST",
            "/cancel",
            json={
                "userId": user_id,
                "subscriptionId": payment_subscription_id,
                "providerRef": gateway_subscription_id or payment_subscription_id,
                "reason": reason,
            },
        )
        return _unwrap(body)

    def list_orders(self, user_id: str, page: int = 1, limit: int = 10) -> Dict:
        return _unwrap(self._request("GET", "/orders", params={"userId": user_id, "page": page, "limit": limit}))

    def list_subscriptions(self, user_id: str, page: int = 1, limit: int = 10) -> Dict:
        return _unwrap(self._request("GET", "/subscriptions", params={"userId": user_id, "page": page, "limit": limit}))

    def verify_success(
        self,
        user_id: str,
        gateway_order_id: str,
        gateway_payment_id: str,
        gateway_signature: str,
    ) -> bool:
        body = self._request(
            "POST",
            "/verify-success",
            json={
                "userId": user_id,
                "razorpayOrderId": gateway_order_id,
                "razorpayPaymentId": gateway_payment_id,
                "razorpaySignature": gateway_signature,
            },
        )
        if "success" in body:
            return bool(body.get("success"))
        return bool(_unwrap(body).get("verified"))

    def trial_eligibility(self, user_id: str, package_id: str = "") -> Dict:
        data = _unwrap(
            self._request(
                "GET",
                "/trial-eligibility",
                params={"userId": user_id, "packageName": package_id or self.package_id},
            )
        )
        # 只认 JSON true，"false" 之类的字符串按不可试用处理
        return {
            "can_use_trial": data.get("canUseTrial", data.get("trialEligible", False)) is True,
            "has_existing_subscription": bool(data.get("hasExistingSubscription", False)),
        }
