import json
import re
import uuid
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy.exc import IntegrityError

from core import billing_state as states
from core.entity_lock import entity_locks, order_key, subscription_key, user_key
from core.errors import (
    AlreadySubscribed,
    GatewayError,
    IllegalTransition,
    InvalidAmount,
    InvalidRequest,
    NotFound,
    PaymentVerificationFailed,
    TrialNotEligible,
)
from core.events import E, log_event
from core.log import get_logger
from core.models.billing_order import BillingOrder
from core.models.subscription import Subscription
from core.models.user import User as DBUser
from core.plan_service import (
    PLAN_TRIAL,
    check_trial_eligibility,
    get_plan_definition,
    get_remote_plan_id,
    normalize_plan_type,
    resolve_plans,
)

logger = get_logger(__name__)

ORDER_TYPES = {"content_purchase", "subscription", "premium_access", "other"}
DEFAULT_CURRENCY = "INR"
# 用户可主动取消的订阅状态；created 尚未支付，直接放弃结账即可
CANCELLABLE_STATUSES = frozenset({states.SUB_AUTHENTICATED, states.SUB_ACTIVE, states.SUB_PAUSED, states.SUB_HALTED})


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _json_text(value) -> str:
    if not value:
        return ""
    return json.dumps(value, ensure_ascii=False, default=str)[:4000]


def _json_value(text: str) -> Dict:
    if not text:
        return {}
    try:
        data = json.loads(text)
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _page_args(page: int, limit: int):
    p = max(1, int(page or 1))
    l = max(1, min(int(limit or 10), 100))
    return p, l


def order_to_dict(order: BillingOrder) -> Dict:
    return {
        "id": order.id,
        "user_id": order.user_id,
        "payment_order_id": order.payment_order_id,
        "gateway_order_id": order.gateway_order_id or "",
        "gateway_payment_id": order.gateway_payment_id or "",
        "refunded_payment_id": order.refunded_payment_id or "",
        "amount": int(order.amount or 0),
        "currency": order.currency,
        "status": order.status,
        "order_type": order.order_type,
        "related_id": order.related_id or "",
        "description": order.description or "",
        "payment_context": _json_value(order.payment_context),
        "paid_at": _iso(order.paid_at),
        "failed_at": _iso(order.failed_at),
        "cancelled_at": _iso(order.cancelled_at),
        "refunded_at": _iso(order.refunded_at),
        "created_at": _iso(order.created_at),
        "updated_at": _iso(order.updated_at),
    }


def subscription_to_dict(sub: Subscription, now: datetime = None) -> Dict:
    now = now or datetime.now()
    return {
        "id": sub.id,
        "user_id": sub.user_id,
        "payment_subscription_id": sub.payment_subscription_id,
        "gateway_subscription_id": sub.gateway_subscription_id or "",
        "plan_id": sub.plan_id,
        "plan_name": sub.plan_name,
        "plan_type": sub.plan_type,
        "amount": int(sub.amount or 0),
        "currency": sub.currency,
        "billing_cycle": sub.billing_cycle,
        "status": sub.status,
        "start_date": _iso(sub.start_date),
        "end_date": _iso(sub.end_date),
        "next_billing_date": _iso(sub.next_billing_date),
        "trial_start": _iso(sub.trial_start),
        "trial_end": _iso(sub.trial_end),
        "auto_renewal": bool(sub.auto_renewal),
        "cancellation_reason": sub.cancellation_reason or "",
        "cancelled_at": _iso(sub.cancelled_at),
        "cancelled_by": sub.cancelled_by or "",
        "short_url": sub.short_url or "",
        "days_remaining": states.days_remaining(sub, now),
        "activated_at": _iso(sub.activated_at),
        "created_at": _iso(sub.created_at),
    }


def get_user(session, user_id: str) -> Optional[DBUser]:
    uid = str(user_id or "").strip()
    if not uid:
        return None
    return session.query(DBUser).filter(DBUser.id == uid).first()


def ensure_user(session, user_info: Dict) -> DBUser:
    """用户主体由用户服务维护，这里按需建立计费投影。"""
    uid = str(user_info.get("id") or "").strip()
    if not uid:
        raise InvalidRequest("insufficient data: user id is required")
    user = get_user(session, uid)
    now = datetime.now()
    if not user:
        user = DBUser(
            id=uid,
            username=str(user_info.get("username") or uid)[:64],
            name=str(user_info.get("name") or "")[:100],
            email=str(user_info.get("email") or "")[:120],
            phone=str(user_info.get("phone") or "")[:20],
            is_active=True,
            is_premium=False,
            trial_used=False,
            created_at=now,
            updated_at=now,
        )
        session.add(user)
        try:
            session.commit()
        except IntegrityError:
            # 并发请求已创建
            session.rollback()
            user = get_user(session, uid)
    return user


def project_user_premium(session, user_id: str, now: datetime = None) -> Optional[DBUser]:
    """按用户全部订阅重算 premium 投影，在调用方事务内执行，不提交。"""
    user = get_user(session, user_id)
    if not user:
        log_event(logger, E.USER_PREMIUM_PROJECT, level="warning", user_id=user_id, reason="user_missing")
        return None
    session.flush()
    subs = session.query(Subscription).filter(Subscription.user_id == user.id).all()
    projection = states.premium_projection(subs)
    changed = any(getattr(user, k) != v for k, v in projection.items())
    for key, value in projection.items():
        setattr(user, key, value)
    if changed:
        user.updated_at = now or datetime.now()
        log_event(
            logger,
            E.USER_PREMIUM_PROJECT,
            user_id=user.id,
            is_premium=projection["is_premium"],
            plan_type=projection["premium_plan_type"],
        )
    return user


def apply_effects(session, user_id: str, transition: states.Transition, now: datetime) -> None:
    if states.EFFECT_MARK_TRIAL_USED in transition.effects:
        user = get_user(session, user_id)
        if user and not user.trial_used:
            user.trial_used = True
            user.updated_at = now
    if states.EFFECT_PROJECT_PREMIUM in transition.effects:
        project_user_premium(session, user_id, now)


def get_order_by_payment_id(session, payment_order_id: str, lock: bool = False) -> Optional[BillingOrder]:
    query = session.query(BillingOrder).filter(BillingOrder.payment_order_id == str(payment_order_id or ""))
    if lock:
        query = query.with_for_update().populate_existing()
    return query.first()


def get_subscription_by_payment_id(session, payment_subscription_id: str, lock: bool = False) -> Optional[Subscription]:
    query = session.query(Subscription).filter(
        Subscription.payment_subscription_id == str(payment_subscription_id or "")
    )
    if lock:
        query = query.with_for_update().populate_existing()
    return query.first()


def get_current_subscription(session, user_id: str) -> Optional[Subscription]:
    current = (
        session.query(Subscription)
        .filter(Subscription.user_id == user_id, Subscription.status.in_(list(states.PREMIUM_STATUSES)))
        .order_by(Subscription.end_date.desc(), Subscription.created_at.desc())
        .first()
    )
    if current:
        return current
    return (
        session.query(Subscription)
        .filter(Subscription.user_id == user_id)
        .order_by(Subscription.created_at.desc())
        .first()
    )


def find_other_premium_subscription(session, user_id: str, exclude_id: str) -> Optional[Subscription]:
    return (
        session.query(Subscription)
        .filter(
            Subscription.user_id == user_id,
            Subscription.id != exclude_id,
            Subscription.status.in_(list(states.PREMIUM_STATUSES)),
        )
        .first()
    )


def sweep_expired_subscriptions(session, now: datetime = None, limit: int = 200) -> Dict:
    """
    将已过结束时间仍为 active 的订阅转为 expired。
    读取订阅时不做隐式过期，只有回调或本扫描会改变状态。
    """
    now = now or datetime.now()
    candidates = (
        session.query(Subscription.payment_subscription_id)
        .filter(
            Subscription.status == states.SUB_ACTIVE,
            Subscription.end_date != None,  # noqa: E711
            Subscription.end_date < now,
        )
        .limit(max(1, min(int(limit or 200), 1000)))
        .all()
    )
    expired = []
    for (payment_subscription_id,) in candidates:
        with entity_locks.hold(subscription_key(payment_subscription_id)):
            sub = get_subscription_by_payment_id(session, payment_subscription_id, lock=True)
            if not sub or sub.status != states.SUB_ACTIVE or not sub.end_date or sub.end_date >= now:
                session.rollback()
                continue
            transition = states.expire(sub, now)
            states.apply_changes(sub, transition)
            apply_effects(session, sub.user_id, transition, now)
            session.commit()
            expired.append(payment_subscription_id)
            log_event(logger, E.SUBSCRIPTION_EXPIRE, subscription_id=payment_subscription_id, user_id=sub.user_id)
    return {"total": len(expired), "subscriptions": expired}


class BillingService:
    """请求处理层使用的门面；支付客户端由启动代码构造后注入。"""

    def __init__(self, client, package_id: str = ""):
        self.client = client
        self.package_id = package_id or getattr(client, "package_id", "")

    # ─── Orders ───────────────────────────────────────────────────────────────

    def create_order(
        self,
        session,
        user_id: str,
        amount,
        currency: str = DEFAULT_CURRENCY,
        order_type: str = "other",
        related_id: str = None,
        description: str = "",
        context: Dict = None,
    ) -> Dict:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmount()
        currency_code = str(currency or DEFAULT_CURRENCY).strip().upper()
        if not re.fullmatch(r"[A-Z]{3}", currency_code):
            raise InvalidRequest("insufficient data: currency must be a 3-letter code")
        kind = str(order_type or "other").strip().lower()
        if kind not in ORDER_TYPES:
            raise InvalidRequest("insufficient data: unknown order type")

        now = datetime.now()
        payment_context = {
            **(context or {}),
            "orderType": kind,
            "relatedId": related_id,
            "description": str(description or "")[:500],
            "userId": user_id,
            "timestamp": now.isoformat(),
        }
        try:
            remote = self.client.create_order(user_id, amount, currency_code, payment_context)
        except GatewayError as e:
            log_event(logger, E.ORDER_CREATE_FAIL, level="warning", user_id=user_id, reason=e.code, detail=e.detail)
            raise

        # 仅在远端成功返回后落库，避免留下无法对账的本地订单
        order = BillingOrder(
            id=str(uuid.uuid4()),
            user_id=user_id,
            payment_order_id=remote["payment_order_id"],
            gateway_order_id=remote.get("gateway_order_id"),
            amount=amount,
            currency=currency_code,
            status=states.ORDER_CREATED,
            order_type=kind,
            related_id=str(related_id)[:128] if related_id else None,
            description=str(description or "")[:500],
            payment_context=_json_text(payment_context),
            created_at=now,
            updated_at=now,
        )
        session.add(order)
        session.commit()
        log_event(
            logger,
            E.ORDER_CREATE,
            user_id=user_id,
            order_id=order.id,
            payment_order_id=order.payment_order_id,
            amount=amount,
            currency=currency_code,
        )
        return {
            "order": order_to_dict(order),
            "checkout": {
                "gateway_order_id": remote.get("gateway_order_id") or "",
                "gateway_key": remote.get("gateway_key") or "",
                "amount": amount,
                "currency": currency_code,
            },
        }

    def list_orders(self, session, user_id: str, page: int = 1, limit: int = 10, status: str = "") -> Dict:
        page, limit = _page_args(page, limit)
        query = session.query(BillingOrder).filter(BillingOrder.user_id == user_id)
        status_text = str(status or "").strip().lower()
        if status_text:
            query = query.filter(BillingOrder.status == status_text)
        total = query.count()
        rows = query.order_by(BillingOrder.created_at.desc()).offset((page - 1) * limit).limit(limit).all()
        return {
            "orders": [order_to_dict(x) for x in rows],
            "pagination": {"page": page, "limit": limit, "total": total, "pages": (total + limit - 1) // limit},
        }

    def list_remote_orders(self, user_id: str, page: int = 1, limit: int = 10) -> Dict:
        page, limit = _page_args(page, limit)
        return self.client.list_orders(user_id, page=page, limit=limit)

    def verify_payment(
        self,
        session,
        user_id: str,
        gateway_order_id: str,
        gateway_payment_id: str,
        gateway_signature: str,
    ) -> Dict:
        if not (gateway_order_id and gateway_payment_id and gateway_signature):
            raise InvalidRequest("insufficient data: missing payment verification fields")

        verified = self.client.verify_success(user_id, gateway_order_id, gateway_payment_id, gateway_signature)
        if not verified:
            log_event(
                logger,
                E.ORDER_VERIFY_FAIL,
                level="warning",
                user_id=user_id,
                gateway_order_id=gateway_order_id,
            )
            raise PaymentVerificationFailed()

        found = (
            session.query(BillingOrder.payment_order_id)
            .filter(BillingOrder.gateway_order_id == gateway_order_id, BillingOrder.user_id == user_id)
            .first()
        )
        if not found:
            logger.warning("支付校验通过但本地无对应订单: gateway_order_id=%s", gateway_order_id)
            return {"verified": True, "order": None, "payment_id": gateway_payment_id}

        now = datetime.now()
        with entity_locks.hold(order_key(found[0])):
            order = get_order_by_payment_id(session, found[0], lock=True)
            try:
                transition = states.mark_paid(order, gateway_payment_id, now)
            except IllegalTransition:
                session.rollback()
                raise
            states.apply_changes(order, transition)
            session.commit()
        if transition.changed:
            log_event(
                logger,
                E.ORDER_VERIFY,
                user_id=user_id,
                payment_order_id=order.payment_order_id,
                from_status=transition.from_status,
                to_status=transition.to_status,
            )
        return {"verified": True, "order": order_to_dict(order), "payment_id": gateway_payment_id}

    # ─── Subscriptions ────────────────────────────────────────────────────────

    def _subscription_context(self, user: DBUser, plan_type: str, description: str, context: Dict) -> Dict:
        plan = get_plan_definition(plan_type)
        base = dict(context or {})
        metadata = {
            "userName": user.name or user.username or "User",
            "userEmail": user.email or "",
            "userPhone": user.phone or "",
            "userId": user.id,
            "packageId": self.package_id,
            "planType": plan_type,
        }
        # 调用方传入的 metadata 优先
        metadata.update(base.get("metadata") or {})
        base.update(
            {
                "planType": plan_type,
                "planName": plan["name"],
                "description": str(description or "")[:500],
                "userId": user.id,
                "timestamp": datetime.now().isoformat(),
                "metadata": metadata,
            }
        )
        return base

    def create_subscription(
        self,
        session,
        user: DBUser,
        plan_type: str,
        context: Dict = None,
        description: str = "",
    ) -> Dict:
        key = normalize_plan_type(plan_type)
        plan = get_plan_definition(key)

        with entity_locks.hold(user_key(user.id)):
            existing = (
                session.query(Subscription)
                .filter(Subscription.user_id == user.id, Subscription.status.in_(list(states.PREMIUM_STATUSES)))
                .with_for_update()
                .first()
            )
            if existing:
                session.rollback()
                log_event(
                    logger,
                    E.SUBSCRIPTION_CREATE_FAIL,
                    level="warning",
                    user_id=user.id,
                    reason="already_subscribed",
                    existing=existing.payment_subscription_id,
                )
                raise AlreadySubscribed()

            if key == PLAN_TRIAL:
                if user.trial_used or not check_trial_eligibility(self.client, user.id, self.package_id):
                    session.rollback()
                    raise TrialNotEligible()

            remote_plan_id = get_remote_plan_id(key)
            payment_context = self._subscription_context(user, key, description, context)
            try:
                remote = self.client.create_subscription(user.id, remote_plan_id, payment_context)
            except GatewayError as e:
                session.rollback()
                log_event(
                    logger,
                    E.SUBSCRIPTION_CREATE_FAIL,
                    level="warning",
                    user_id=user.id,
                    reason=e.code,
                    detail=e.detail,
                )
                raise

            now = datetime.now()
            sub = Subscription(
                id=str(uuid.uuid4()),
                user_id=user.id,
                payment_subscription_id=remote["payment_subscription_id"],
                gateway_subscription_id=remote.get("gateway_subscription_id"),
                plan_id=remote_plan_id,
                plan_name=plan["name"],
                plan_type=key,
                amount=int(plan["amount"]),
                currency=DEFAULT_CURRENCY,
                billing_cycle=plan["billing_cycle"],
                status=states.SUB_CREATED,
                auto_renewal=True,
                short_url=remote.get("short_url") or "",
                payment_context=_json_text(payment_context),
                created_at=now,
                updated_at=now,
            )
            session.add(sub)
            session.commit()

        log_event(
            logger,
            E.SUBSCRIPTION_CREATE,
            user_id=user.id,
            subscription_id=sub.id,
            payment_subscription_id=sub.payment_subscription_id,
            plan_type=key,
        )
        return {
            "subscription": subscription_to_dict(sub),
            "checkout": {
                "gateway_subscription_id": sub.gateway_subscription_id or "",
                "gateway_key": remote.get("gateway_key") or "",
                "short_url": sub.short_url or "",
            },
        }

    def list_subscriptions(
        self,
        session,
        user_id: str,
        page: int = 1,
        limit: int = 10,
        status: str = "",
        plan_type: str = "",
    ) -> Dict:
        page, limit = _page_args(page, limit)
        query = session.query(Subscription).filter(Subscription.user_id == user_id)
        status_text = str(status or "").strip().lower()
        if status_text:
            query = query.filter(Subscription.status == status_text)
        plan_text = str(plan_type or "").strip().lower()
        if plan_text:
            query = query.filter(Subscription.plan_type == plan_text)
        total = query.count()
        rows = query.order_by(Subscription.created_at.desc()).offset((page - 1) * limit).limit(limit).all()
        now = datetime.now()
        return {
            "subscriptions": [subscription_to_dict(x, now) for x in rows],
            "pagination": {"page": page, "limit": limit, "total": total, "pages": (total + limit - 1) // limit},
        }

    def cancel_subscription(self, session, user_id: str, reason: str = "") -> Dict:
        """
        用户主动取消当前订阅：先通知支付服务，成功后在本地迁移为 cancelled 并重算 premium。
        之后远端推送的 subscription.cancelled 回调按无变化处理。
        """
        current = (
            session.query(Subscription)
            .filter(Subscription.user_id == user_id, Subscription.status.in_(list(CANCELLABLE_STATUSES)))
            .order_by(Subscription.created_at.desc())
            .first()
        )
        if not current:
            session.rollback()
            raise NotFound("no active subscription found")
        payment_subscription_id = current.payment_subscription_id
        reason_text = str(reason or "").strip()[:255] or "cancelled by user"

        try:
            self.client.cancel_subscription(
                user_id,
                payment_subscription_id,
                current.gateway_subscription_id or "",
                reason_text,
            )
        except GatewayError as e:
            session.rollback()
            log_event(
                logger,
                E.SUBSCRIPTION_CANCEL_FAIL,
                level="warning",
                user_id=user_id,
                subscription_id=payment_subscription_id,
                reason=e.code,
                detail=e.detail,
            )
            raise

        now = datetime.now()
        with entity_locks.hold(subscription_key(payment_subscription_id)):
            sub = get_subscription_by_payment_id(session, payment_subscription_id, lock=True)
            try:
                transition = states.cancel(sub, now, reason=reason_text, actor=user_id)
            except IllegalTransition:
                session.rollback()
                raise
            states.apply_changes(sub, transition)
            apply_effects(session, user_id, transition, now)
            session.commit()

        log_event(
            logger,
            E.SUBSCRIPTION_CANCEL,
            user_id=user_id,
            subscription_id=payment_subscription_id,
            from_status=transition.from_status,
            to_status=transition.to_status,
        )
        return {"subscription": subscription_to_dict(sub, now), "cancelled_at": _iso(sub.cancelled_at)}

    def get_subscription_overview(self, session, user_id: str) -> Dict:
        current = get_current_subscription(session, user_id)
        data = {
            "subscription": subscription_to_dict(current) if current else None,
            "remote": None,
            "source": "local",
        }
        try:
            remote = self.client.list_subscriptions(user_id, page=1, limit=10)
        except GatewayError as e:
            log_event(logger, E.SUBSCRIPTION_OVERVIEW_DEGRADED, level="warning", user_id=user_id, reason=e.code)
            return data
        items: List[Dict] = remote.get("subscriptions") or []
        active = next((x for x in items if isinstance(x, dict) and x.get("status") == states.SUB_ACTIVE), None)
        data["remote"] = active
        data["source"] = "local+remote"
        return data

    def get_premium_status(self, session, user_id: str) -> Dict:
        user = get_user(session, user_id)
        if not user:
            raise NotFound("user not found")
        current = get_current_subscription(session, user_id)
        now = datetime.now()
        return {
            "is_premium": bool(user.is_premium),
            "plan_type": user.premium_plan_type,
            "status": current.status if current else "inactive",
            "end_date": _iso(current.end_date) if current else None,
            "next_billing_date": _iso(current.next_billing_date) if current else None,
            "days_remaining": states.days_remaining(current, now) if current else None,
            "trial_used": bool(user.trial_used),
        }

    # ─── Plans ────────────────────────────────────────────────────────────────

    def resolve_plans(self, session, user_id: str) -> Dict:
        user = get_user(session, user_id)
        trial_used = bool(user.trial_used) if user else False
        return resolve_plans(self.client, user_id, self.package_id, trial_used=trial_used)

    def service_status(self) -> Dict:
        return {
            "enabled": self.client is not None,
            "base_url": getattr(self.client, "base_url", None),
            "package_id": self.package_id or None,
        }
