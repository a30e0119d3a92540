"""
core/billing_state.py — 订单 / 订阅状态机

纯函数：读取当前实体（ORM 行或任意带同名属性的对象），返回 Transition，
不修改实体、不访问数据库。调用方负责在同一事务内落库并执行 effects。

订单:  created → attempted → {paid, failed}
       created → {paid, failed, cancelled}
       paid → refunded
订阅:  created → authenticated → active
       active → {paused, halted, cancelled, completed, expired}
       paused → active, halted → {active, cancelled}
       任意非终态 → cancelled
"""

import math
from datetime import datetime
from typing import Dict, Iterable, List, NamedTuple, Optional

from core.errors import IllegalTransition, PaymentConflict
from core.plan_service import PLAN_TRIAL, plan_period_end


ORDER_CREATED = "created"
ORDER_ATTEMPTED = "attempted"
ORDER_PAID = "paid"
ORDER_FAILED = "failed"
ORDER_CANCELLED = "cancelled"
ORDER_REFUNDED = "refunded"

ORDER_TRANSITIONS: Dict[str, frozenset] = {
    ORDER_CREATED: frozenset({ORDER_ATTEMPTED, ORDER_PAID, ORDER_FAILED, ORDER_CANCELLED}),
    ORDER_ATTEMPTED: frozenset({ORDER_PAID, ORDER_FAILED}),
    ORDER_PAID: frozenset({ORDER_REFUNDED}),
    ORDER_FAILED: frozenset(),
    ORDER_CANCELLED: frozenset(),
    ORDER_REFUNDED: frozenset(),
}

SUB_CREATED = "created"
SUB_AUTHENTICATED = "authenticated"
SUB_ACTIVE = "active"
SUB_PAUSED = "paused"
SUB_HALTED = "halted"
SUB_CANCELLED = "cancelled"
SUB_COMPLETED = "completed"
SUB_EXPIRED = "expired"

SUBSCRIPTION_TRANSITIONS: Dict[str, frozenset] = {
    SUB_CREATED: frozenset({SUB_AUTHENTICATED, SUB_ACTIVE, SUB_CANCELLED}),
    SUB_AUTHENTICATED: frozenset({SUB_ACTIVE, SUB_CANCELLED}),
    SUB_ACTIVE: frozenset({SUB_PAUSED, SUB_HALTED, SUB_CANCELLED, SUB_COMPLETED, SUB_EXPIRED}),
    SUB_PAUSED: frozenset({SUB_ACTIVE, SUB_CANCELLED}),
    SUB_HALTED: frozenset({SUB_ACTIVE, SUB_CANCELLED}),
    SUB_CANCELLED: frozenset(),
    SUB_COMPLETED: frozenset(),
    SUB_EXPIRED: frozenset(),
}

SUB_TERMINAL = frozenset({SUB_CANCELLED, SUB_COMPLETED, SUB_EXPIRED})
# 处于这些状态的订阅使用户成为 premium，也阻止再次创建订阅
PREMIUM_STATUSES = frozenset({SUB_ACTIVE, SUB_AUTHENTICATED})

EFFECT_PROJECT_PREMIUM = "project_premium"
EFFECT_MARK_TRIAL_USED = "mark_trial_used"


class Transition(NamedTuple):
    entity: str
    from_status: str
    to_status: str
    changes: Dict
    effects: List[str]

    @property
    def changed(self) -> bool:
        return bool(self.changes)


def _noop(entity: str, status: str) -> Transition:
    return Transition(entity, status, status, {}, [])


def _check_move(entity: str, graph: Dict[str, frozenset], current: str, target: str) -> None:
    if target not in graph.get(current, frozenset()):
        raise IllegalTransition(entity, current, target)


def apply_changes(entity, transition: Transition):
    for key, value in transition.changes.items():
        setattr(entity, key, value)
    return entity


# ─── Order ────────────────────────────────────────────────────────────────────


def _order_move(order, target: str, now: datetime, extra: Dict = None) -> Transition:
    current = str(order.status or ORDER_CREATED)
    if current == target:
        return _noop("order", current)
    _check_move("order", ORDER_TRANSITIONS, current, target)
    changes = {"status": target, "updated_at": now}
    changes.update(extra or {})
    return Transition("order", current, target, changes, [])


def mark_attempted(order, now: datetime) -> Transition:
    return _order_move(order, ORDER_ATTEMPTED, now)


def mark_paid(order, gateway_payment_id: str, now: datetime) -> Transition:
    payment_id = str(gateway_payment_id or "").strip()
    current = str(order.status or ORDER_CREATED)
    if not payment_id:
        raise IllegalTransition("order", current, ORDER_PAID, message="gateway payment id is required to mark an order paid")
    if current == ORDER_PAID:
        existing = str(order.gateway_payment_id or "")
        if existing == payment_id:
            return _noop("order", current)
        raise PaymentConflict(existing, payment_id)
    return _order_move(order, ORDER_PAID, now, {"gateway_payment_id": payment_id, "paid_at": now})


def mark_failed(order, now: datetime) -> Transition:
    return _order_move(order, ORDER_FAILED, now, {"failed_at": now})


def mark_cancelled(order, now: datetime) -> Transition:
    return _order_move(order, ORDER_CANCELLED, now, {"cancelled_at": now})


def mark_refunded(order, now: datetime) -> Transition:
    # 只有 paid 订单持有 gateway_payment_id，退款后移入 refunded_payment_id
    extra = {
        "refunded_at": now,
        "gateway_payment_id": None,
        "refunded_payment_id": order.gateway_payment_id,
    }
    return _order_move(order, ORDER_REFUNDED, now, extra)


# ─── Subscription ─────────────────────────────────────────────────────────────


def _premium_effects(current: str, target: str) -> List[str]:
    if (current in PREMIUM_STATUSES) != (target in PREMIUM_STATUSES):
        return [EFFECT_PROJECT_PREMIUM]
    return []


def _subscription_move(subscription, target: str, now: datetime, extra: Dict = None) -> Transition:
    current = str(subscription.status or SUB_CREATED)
    if current == target:
        return _noop("subscription", current)
    _check_move("subscription", SUBSCRIPTION_TRANSITIONS, current, target)
    changes = {"status": target, "updated_at": now}
    changes.update(extra or {})
    return Transition("subscription", current, target, changes, _premium_effects(current, target))


def authenticate(subscription, now: datetime) -> Transition:
    return _subscription_move(subscription, SUB_AUTHENTICATED, now)


def activate(
    subscription,
    now: datetime,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    trial_used: bool = False,
) -> Transition:
    """trial_used 表示远端在本次激活中消耗了试用（例如带免费试用的月付）。"""
    current = str(subscription.status or SUB_CREATED)
    if current == SUB_ACTIVE:
        effects = [EFFECT_MARK_TRIAL_USED] if trial_used else []
        return Transition("subscription", current, current, {}, effects)
    if current not in (SUB_CREATED, SUB_AUTHENTICATED, SUB_HALTED):
        raise IllegalTransition("subscription", current, SUB_ACTIVE)

    start = start_date or now
    end = end_date or plan_period_end(subscription.plan_type, start)
    extra = {
        "start_date": start,
        "end_date": end,
        "next_billing_date": end if subscription.auto_renewal is not False else None,
        "activated_at": now,
    }
    transition = _subscription_move(subscription, SUB_ACTIVE, now, extra)
    if subscription.plan_type == PLAN_TRIAL:
        transition.changes.update({"trial_start": start, "trial_end": end})
    if subscription.plan_type == PLAN_TRIAL or trial_used:
        transition.effects.append(EFFECT_MARK_TRIAL_USED)
    return transition


def renew(subscription, now: datetime, paid_until: Optional[datetime] = None) -> Transition:
    """周期扣款成功：未激活 / 欠费的订阅被激活，已激活的订阅顺延一个周期。"""
    current = str(subscription.status or SUB_CREATED)
    if current in (SUB_CREATED, SUB_AUTHENTICATED, SUB_HALTED):
        return activate(subscription, now, end_date=paid_until)
    if current != SUB_ACTIVE:
        raise IllegalTransition("subscription", current, SUB_ACTIVE)

    base = subscription.end_date if subscription.end_date and subscription.end_date > now else now
    end = paid_until or plan_period_end(subscription.plan_type, base)
    if subscription.end_date and end <= subscription.end_date:
        return _noop("subscription", current)
    changes = {
        "end_date": end,
        "next_billing_date": end if subscription.auto_renewal is not False else None,
        "updated_at": now,
    }
    return Transition("subscription", current, current, changes, [EFFECT_PROJECT_PREMIUM])


def pause(subscription, now: datetime) -> Transition:
    return _subscription_move(subscription, SUB_PAUSED, now)


def resume(subscription, now: datetime) -> Transition:
    current = str(subscription.status or SUB_CREATED)
    if current not in (SUB_PAUSED, SUB_ACTIVE):
        raise IllegalTransition("subscription", current, SUB_ACTIVE)
    return _subscription_move(subscription, SUB_ACTIVE, now)


def halt(subscription, now: datetime) -> Transition:
    return _subscription_move(subscription, SUB_HALTED, now)


def complete(subscription, now: datetime) -> Transition:
    return _subscription_move(subscription, SUB_COMPLETED, now, {"auto_renewal": False, "next_billing_date": None})


def expire(subscription, now: datetime) -> Transition:
    return _subscription_move(subscription, SUB_EXPIRED, now, {"auto_renewal": False, "next_billing_date": None})


def cancel(subscription, now: datetime, reason: str = "", actor: str = "") -> Transition:
    current = str(subscription.status or SUB_CREATED)
    if current == SUB_CANCELLED:
        return _noop("subscription", current)
    if current in SUB_TERMINAL:
        raise IllegalTransition("subscription", current, SUB_CANCELLED)
    extra = {
        "cancellation_reason": str(reason or "")[:255],
        "cancelled_at": now,
        "cancelled_by": str(actor or "")[:64] or None,
        "auto_renewal": False,
        "next_billing_date": None,
    }
    return _subscription_move(subscription, SUB_CANCELLED, now, extra)


def days_remaining(subscription, now: datetime) -> Optional[int]:
    end = getattr(subscription, "end_date", None)
    if not end:
        return None
    return math.ceil((end - now).total_seconds() / 86400)


def premium_projection(subscriptions: Iterable) -> Dict:
    """根据用户全部订阅推导 premium 字段；以结束时间最晚的有效订阅为准。"""
    current = None
    for item in subscriptions:
        if item.status not in PREMIUM_STATUSES:
            continue
        if current is None or (item.end_date or datetime.min) > (current.end_date or datetime.min):
            current = item
    if current is None:
        return {"is_premium": False, "premium_plan_type": None, "premium_expires_at": None}
    return {
        "is_premium": True,
        "premium_plan_type": current.plan_type,
        "premium_expires_at": current.end_date,
    }
