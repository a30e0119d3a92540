"""
core/events.py — 结构化事件日志

格式：event=xxx | key=val | key=val

    from core.log import get_logger
    from core.events import log_event, E

    logger = get_logger(__name__)
    log_event(logger, E.ORDER_CREATE, user_id="u1", payment_order_id="po_1", amount=9900)
    # 输出：event=billing.order.create | user_id=u1 | payment_order_id=po_1 | amount=9900
"""

import logging
from typing import Any


class E:
    """结构化事件类型常量，按功能模块分组。"""

    # ── M2M 凭证 ───────────────────────────────────────────────────────────────
    M2M_MINT = "m2m.token.mint"
    M2M_VERIFY_FAIL = "m2m.token.verify_fail"

    # ── 支付网关 Gateway ───────────────────────────────────────────────────────
    GATEWAY_REQUEST = "gateway.request"
    GATEWAY_RESPONSE = "gateway.response"
    GATEWAY_TIMEOUT = "gateway.timeout"
    GATEWAY_UNAVAILABLE = "gateway.unavailable"
    GATEWAY_REJECTED = "gateway.rejected"

    # ── 套餐 Plan ──────────────────────────────────────────────────────────────
    PLAN_RESOLVE = "billing.plan.resolve"
    PLAN_ELIGIBILITY_DEGRADED = "billing.plan.eligibility_degraded"

    # ── 订单 Order ─────────────────────────────────────────────────────────────
    ORDER_CREATE = "billing.order.create"
    ORDER_CREATE_FAIL = "billing.order.create_fail"
    ORDER_VERIFY = "billing.order.verify"
    ORDER_VERIFY_FAIL = "billing.order.verify_fail"
    ORDER_TRANSITION = "billing.order.transition"

    # ── 订阅 Subscription ──────────────────────────────────────────────────────
    SUBSCRIPTION_CREATE = "billing.subscription.create"
    SUBSCRIPTION_CREATE_FAIL = "billing.subscription.create_fail"
    SUBSCRIPTION_TRANSITION = "billing.subscription.transition"
    SUBSCRIPTION_OVERVIEW_DEGRADED = "billing.subscription.overview_degraded"
    SUBSCRIPTION_EXPIRE = "billing.subscription.expire"
    SUBSCRIPTION_RENEW = "billing.subscription.renew"
    SUBSCRIPTION_CANCEL = "billing.subscription.cancel"
    SUBSCRIPTION_CANCEL_FAIL = "billing.subscription.cancel_fail"
    USER_PREMIUM_PROJECT = "billing.user.premium_project"

    # ── 回调 Callback ──────────────────────────────────────────────────────────
    CALLBACK_RECEIVE = "billing.callback.receive"
    CALLBACK_APPLY = "billing.callback.apply"
    CALLBACK_DUPLICATE = "billing.callback.duplicate"
    CALLBACK_UNKNOWN_ENTITY = "billing.callback.unknown_entity"
    CALLBACK_UNKNOWN_EVENT = "billing.callback.unknown_event"
    CALLBACK_CONFLICT = "billing.callback.conflict"
    CALLBACK_FAIL = "billing.callback.fail"

    # ── 定时扫描 Sweep ─────────────────────────────────────────────────────────
    SWEEP_START = "billing.sweep.start"
    SWEEP_COMPLETE = "billing.sweep.complete"
    SWEEP_PRUNE = "billing.sweep.prune"


def log_event(
    logger: logging.Logger,
    event: str,
    level: str = "info",
    **fields: Any,
) -> None:
    parts = [f"event={event}"]
    for k, v in fields.items():
        sv = str(v) if not isinstance(v, str) else v
        # 截断超长字段，避免单行日志过大
        if len(sv) > 300:
            sv = sv[:297] + "..."
        parts.append(f"{k}={sv}")
    getattr(logger, level)(" | ".join(parts), stacklevel=2)
