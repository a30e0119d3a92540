"""
core/callback_service.py — 支付回调摄取

流程：归一化载荷 → 查幂等标记 → 加实体锁重读 → 状态机迁移 → 副作用与标记同一事务提交。
业务冲突（非法迁移、未知实体）一律确认收到，只有载荷畸形或本地存储故障才返回错误，
避免远端按非 2xx 无限重投。
"""

import hashlib
import json
import uuid
from contextlib import nullcontext
from datetime import datetime, timedelta
from typing import Callable, Dict, Mapping, NamedTuple, Optional

from sqlalchemy.exc import IntegrityError

from core import billing_state as states
from core.billing_service import (
    apply_effects,
    find_other_premium_subscription,
    get_order_by_payment_id,
    get_subscription_by_payment_id,
)
from core.entity_lock import entity_locks, order_key, subscription_key, user_key
from core.errors import IllegalTransition, InvalidRequest, UnknownEvent
from core.events import E, log_event
from core.log import get_logger
from core.models.billing_order import BillingOrder
from core.models.payment_event import PaymentEvent
from core.models.subscription import Subscription

logger = get_logger(__name__)

KIND_ORDER = "order"
KIND_SUBSCRIPTION = "subscription"

OUTCOME_APPLIED = "applied"
OUTCOME_NOOP = "noop"
OUTCOME_CONFLICT = "conflict"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_UNKNOWN_ENTITY = "unknown_entity"

# 远端历史上用过的事件名 → (订单事件, 订阅事件)
EVENT_ALIASES = {
    "payment.succeeded": ("order.paid", "invoice.paid"),
    "invoice.payment_succeeded": ("order.paid", "invoice.paid"),
    "subscription.charged": ("order.paid", "invoice.paid"),
    "payment.failed": ("order.failed", "subscription.halted"),
    "invoice.payment_failed": ("order.failed", "subscription.halted"),
}

ORDER_STATUS_EVENTS = {
    "attempted": "order.attempted",
    "paid": "order.paid",
    "captured": "order.paid",
    "failed": "order.failed",
    "cancelled": "order.cancelled",
    "refunded": "order.refunded",
}

SUBSCRIPTION_STATUS_EVENTS = {
    "authenticated": "subscription.authenticated",
    "active": "subscription.activated",
    "paid": "subscription.activated",
    "charged": "invoice.paid",
    "paused": "subscription.paused",
    "resumed": "subscription.resumed",
    "halted": "subscription.halted",
    "failed": "subscription.halted",
    "cancelled": "subscription.cancelled",
    "completed": "subscription.completed",
    "expired": "subscription.expired",
}


class CallbackEvent(NamedTuple):
    event_type: str
    kind: str
    entity_id: str
    delivery_id: str
    user_id: str
    data: Dict


def _text(value) -> str:
    return str(value).strip() if value is not None else ""


def _first(sources, *keys) -> str:
    for source in sources:
        for key in keys:
            value = _text(source.get(key))
            if value:
                return value
    return ""


def parse_time(value) -> Optional[datetime]:
    """支持 ISO 字符串与 epoch 秒，统一为本地 naive 时间。"""
    if value in (None, ""):
        return None
    try:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return datetime.fromtimestamp(float(value))
        text = str(value).strip()
        if text.isdigit():
            return datetime.fromtimestamp(int(text))
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except (ValueError, OverflowError, OSError):
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def body_digest(body: Mapping) -> str:
    canonical = json.dumps(body, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _delivery_id(body: Mapping, headers: Mapping) -> str:
    value = _first([body], "deliveryId", "delivery_id", "eventId", "event_id")
    if not value:
        value = _text((headers or {}).get("x-delivery-id") or (headers or {}).get("X-Delivery-Id"))
    if not value:
        value = _text(body.get("timestamp"))
    if not value:
        value = body_digest(body)
    return value[:128]


def _event_kind(event_type: str) -> str:
    if event_type.startswith("order."):
        return KIND_ORDER
    return KIND_SUBSCRIPTION


def normalize_event(body: Mapping, headers: Mapping = None, package_id: str = "") -> CallbackEvent:
    """
    兼容两种载荷：
      事件型  {event, userId, sourceApp, data: {orderId|subscriptionId, ...}, timestamp}
      状态型  {userId, orderId|subscriptionId, status, gatewayPaymentId, paymentContext}
             试用感知变体另带 success / packageName / trialUsed / razorpaySubscriptionId
    """
    if not isinstance(body, Mapping):
        raise InvalidRequest("insufficient data: callback body must be an object")

    data = body.get("data") if isinstance(body.get("data"), Mapping) else {}
    sources = [data, body]

    package_name = _first([body], "packageName", "packageId")
    if package_id and package_name and package_name != package_id:
        raise InvalidRequest("insufficient data: package id mismatch")

    order_id = _first(sources, "orderId", "order_id", "paymentOrderId")
    subscription_id = _first(sources, "subscriptionId", "subscription_id", "paymentSubscriptionId")
    if not subscription_id:
        subscription_id = _first(sources, "gatewaySubscriptionId", "razorpaySubscriptionId")

    event_name = _text(body.get("event") or body.get("type")).lower()
    if event_name:
        if event_name in EVENT_ALIASES:
            order_event, subscription_event = EVENT_ALIASES[event_name]
            event_type = order_event if order_id and not subscription_id else subscription_event
        else:
            event_type = event_name
    else:
        status = _text(body.get("status") or data.get("status")).lower()
        if body.get("success") is False:
            status = "failed"
        if not status:
            raise InvalidRequest("insufficient data: callback has neither event nor status")
        if subscription_id:
            event_type = SUBSCRIPTION_STATUS_EVENTS.get(status, "")
        elif order_id:
            event_type = ORDER_STATUS_EVENTS.get(status, "")
        else:
            raise InvalidRequest("insufficient data: callback has no order or subscription id")
        if not event_type:
            raise UnknownEvent(f"unknown callback status: {status}")

    if event_type not in ORDER_HANDLERS and event_type not in SUBSCRIPTION_HANDLERS:
        raise UnknownEvent(f"unknown callback event: {event_type}")

    kind = _event_kind(event_type)
    entity_id = order_id if kind == KIND_ORDER else subscription_id
    if not entity_id:
        raise InvalidRequest(f"insufficient data: {kind} id is required for {event_type}")

    merged = dict(body)
    merged.pop("data", None)
    merged.update(data)
    return CallbackEvent(
        event_type=event_type,
        kind=kind,
        entity_id=entity_id[:128],
        delivery_id=_delivery_id(body, headers or {}),
        user_id=_first(sources, "userId", "user_id"),
        data=merged,
    )


# ─── Transition dispatch ──────────────────────────────────────────────────────


def _payment_id(ev: CallbackEvent) -> str:
    return _first([ev.data], "gatewayPaymentId", "paymentId", "razorpayPaymentId", "payment_id")


def _paid_until(ev: CallbackEvent) -> Optional[datetime]:
    return parse_time(ev.data.get("currentEnd") or ev.data.get("endDate") or ev.data.get("nextBillingDate"))


def _flag(value) -> bool:
    return value is True or _text(value).lower() == "true"


def _trial_used(ev: CallbackEvent) -> bool:
    """试用感知回调带 trialUsed；状态型回调可能放在 paymentContext.isTrial。"""
    context = ev.data.get("paymentContext")
    if not isinstance(context, Mapping):
        context = {}
    return _flag(ev.data.get("trialUsed")) or _flag(context.get("isTrial"))


def _check_single_active(session, subscription, transition: states.Transition) -> None:
    if transition.to_status not in states.PREMIUM_STATUSES or transition.from_status in states.PREMIUM_STATUSES:
        return
    other = find_other_premium_subscription(session, subscription.user_id, subscription.id)
    if other is not None:
        raise IllegalTransition(
            "subscription",
            transition.from_status,
            transition.to_status,
            message=f"user already has {other.status} subscription {other.payment_subscription_id}",
        )


ORDER_HANDLERS: Dict[str, Callable] = {
    "order.attempted": lambda o, ev, now: states.mark_attempted(o, now),
    "order.paid": lambda o, ev, now: states.mark_paid(o, _payment_id(ev), now),
    "order.failed": lambda o, ev, now: states.mark_failed(o, now),
    "order.cancelled": lambda o, ev, now: states.mark_cancelled(o, now),
    "order.refunded": lambda o, ev, now: states.mark_refunded(o, now),
}

SUBSCRIPTION_HANDLERS: Dict[str, Callable] = {
    "subscription.authenticated": lambda s, ev, now: states.authenticate(s, now),
    "subscription.activated": lambda s, ev, now: states.activate(
        s,
        now,
        parse_time(ev.data.get("currentStart") or ev.data.get("startDate")),
        _paid_until(ev),
        trial_used=_trial_used(ev),
    ),
    "invoice.paid": lambda s, ev, now: states.renew(s, now, _paid_until(ev)),
    "subscription.paused": lambda s, ev, now: states.pause(s, now),
    "subscription.resumed": lambda s, ev, now: states.resume(s, now),
    "subscription.halted": lambda s, ev, now: states.halt(s, now),
    "subscription.cancelled": lambda s, ev, now: states.cancel(
        s, now, reason=_text(ev.data.get("reason") or ev.data.get("cancellationReason")), actor="gateway"
    ),
    "subscription.completed": lambda s, ev, now: states.complete(s, now),
    "subscription.expired": lambda s, ev, now: states.expire(s, now),
}


def _find_marker(session, ev: CallbackEvent) -> Optional[PaymentEvent]:
    return (
        session.query(PaymentEvent)
        .filter(
            PaymentEvent.event_type == ev.event_type,
            PaymentEvent.entity_id == ev.entity_id,
            PaymentEvent.delivery_id == ev.delivery_id,
        )
        .first()
    )


def _marker(ev: CallbackEvent, outcome: str, user_id: str, now: datetime, detail: str = "") -> PaymentEvent:
    return PaymentEvent(
        id=str(uuid.uuid4()),
        event_type=ev.event_type,
        entity_id=ev.entity_id,
        delivery_id=ev.delivery_id,
        user_id=user_id or ev.user_id or None,
        outcome=outcome,
        detail=str(detail or "")[:500],
        payload=json.dumps(ev.data, ensure_ascii=False, default=str)[:4000],
        received_at=now,
    )


def _load_entity(session, ev: CallbackEvent):
    if ev.kind == KIND_ORDER:
        entity = get_order_by_payment_id(session, ev.entity_id, lock=True)
        if entity is None:
            entity = (
                session.query(BillingOrder)
                .filter(BillingOrder.gateway_order_id == ev.entity_id)
                .with_for_update()
                .populate_existing()
                .first()
            )
        return entity
    entity = get_subscription_by_payment_id(session, ev.entity_id, lock=True)
    if entity is None:
        entity = (
            session.query(Subscription)
            .filter(Subscription.gateway_subscription_id == ev.entity_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
    return entity


def _result(ev: CallbackEvent, outcome: str, transition: states.Transition = None) -> Dict:
    data = {
        "outcome": outcome,
        "event_type": ev.event_type,
        "entity_id": ev.entity_id,
        "delivery_id": ev.delivery_id,
    }
    if transition is not None:
        data["from_status"] = transition.from_status
        data["to_status"] = transition.to_status
    return data


def _commit_marker(session, ev: CallbackEvent) -> bool:
    try:
        session.commit()
    except IntegrityError:
        # 并发的同一投递已先写入标记，本次按重复处理
        session.rollback()
        log_event(logger, E.CALLBACK_DUPLICATE, event_type=ev.event_type, entity_id=ev.entity_id, race=True)
        return False
    return True


def handle_event(session, ev: CallbackEvent, now: datetime = None) -> Dict:
    now = now or datetime.now()
    log_event(
        logger,
        E.CALLBACK_RECEIVE,
        event_type=ev.event_type,
        entity_id=ev.entity_id,
        delivery_id=ev.delivery_id,
        user_id=ev.user_id,
    )

    if _find_marker(session, ev):
        session.rollback()
        log_event(logger, E.CALLBACK_DUPLICATE, event_type=ev.event_type, entity_id=ev.entity_id)
        return _result(ev, OUTCOME_DUPLICATE)

    lock_key = order_key(ev.entity_id) if ev.kind == KIND_ORDER else subscription_key(ev.entity_id)
    with entity_locks.hold(lock_key):
        entity = _load_entity(session, ev)
        if entity is None:
            session.rollback()
            # 不写标记：本地稍后落库后远端重投仍可生效
            log_event(
                logger,
                E.CALLBACK_UNKNOWN_ENTITY,
                level="warning",
                event_type=ev.event_type,
                kind=ev.kind,
                entity_id=ev.entity_id,
            )
            return _result(ev, OUTCOME_UNKNOWN_ENTITY)

        # 持锁后复查，等待期间同一投递可能已被处理
        if _find_marker(session, ev):
            session.rollback()
            log_event(logger, E.CALLBACK_DUPLICATE, event_type=ev.event_type, entity_id=ev.entity_id)
            return _result(ev, OUTCOME_DUPLICATE)

        if ev.user_id and entity.user_id != ev.user_id:
            detail = f"callback user {ev.user_id} does not own {ev.kind} {ev.entity_id}"
            session.add(_marker(ev, OUTCOME_CONFLICT, entity.user_id, now, detail))
            if not _commit_marker(session, ev):
                return _result(ev, OUTCOME_DUPLICATE)
            log_event(logger, E.CALLBACK_CONFLICT, level="warning", event_type=ev.event_type, entity_id=ev.entity_id, reason="user_mismatch")
            return _result(ev, OUTCOME_CONFLICT)

        handlers = ORDER_HANDLERS if ev.kind == KIND_ORDER else SUBSCRIPTION_HANDLERS
        # 订阅迁移同时持用户锁：同一用户最多一个 authenticated / active 订阅
        user_lock = entity_locks.hold(user_key(entity.user_id)) if ev.kind == KIND_SUBSCRIPTION else nullcontext()
        with user_lock:
            try:
                transition = handlers[ev.event_type](entity, ev, now)
                if ev.kind == KIND_SUBSCRIPTION:
                    _check_single_active(session, entity, transition)
            except IllegalTransition as e:
                session.add(_marker(ev, OUTCOME_CONFLICT, entity.user_id, now, e.message))
                if not _commit_marker(session, ev):
                    return _result(ev, OUTCOME_DUPLICATE)
                log_event(
                    logger,
                    E.CALLBACK_CONFLICT,
                    level="warning",
                    event_type=ev.event_type,
                    entity_id=ev.entity_id,
                    current=e.current,
                    target=e.target,
                    reason=e.code,
                )
                return _result(ev, OUTCOME_CONFLICT)

            states.apply_changes(entity, transition)
            apply_effects(session, entity.user_id, transition, now)
            outcome = OUTCOME_APPLIED if transition.changed else OUTCOME_NOOP
            session.add(_marker(ev, outcome, entity.user_id, now))
            if not _commit_marker(session, ev):
                return _result(ev, OUTCOME_DUPLICATE)

    if transition.changed:
        event_name = E.ORDER_TRANSITION if ev.kind == KIND_ORDER else E.SUBSCRIPTION_TRANSITION
        if ev.event_type == "invoice.paid" and transition.from_status == transition.to_status:
            event_name = E.SUBSCRIPTION_RENEW
        log_event(
            logger,
            event_name,
            entity_id=ev.entity_id,
            user_id=entity.user_id,
            from_status=transition.from_status,
            to_status=transition.to_status,
        )
    log_event(logger, E.CALLBACK_APPLY, event_type=ev.event_type, entity_id=ev.entity_id, outcome=outcome)
    return _result(ev, outcome, transition)


def handle_callback(session, body: Mapping, headers: Mapping = None, package_id: str = "", now: datetime = None) -> Dict:
    try:
        ev = normalize_event(body, headers, package_id)
    except UnknownEvent as e:
        log_event(logger, E.CALLBACK_UNKNOWN_EVENT, level="warning", reason=e.message)
        raise
    return handle_event(session, ev, now)


def prune_payment_events(session, retention_days: int = 30, now: datetime = None) -> int:
    now = now or datetime.now()
    cutoff = now - timedelta(days=max(1, int(retention_days or 30)))
    deleted = (
        session.query(PaymentEvent)
        .filter(PaymentEvent.received_at < cutoff)
        .delete(synchronize_session=False)
    )
    session.commit()
    log_event(logger, E.SWEEP_PRUNE, deleted=deleted, cutoff=cutoff.isoformat())
    return deleted
