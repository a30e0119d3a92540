from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, status
from pydantic import AliasChoices, BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError

from core.auth import get_current_user
from core.billing_service import BillingService, ensure_user
from core.callback_service import handle_callback
from core.config import cfg
from core.db import DB
from core.errors import BillingError, GatewayError, InvalidCredential
from core.events import E, log_event
from core.log import get_logger
from core.m2m import bearer_token, verify
from core.plan_service import get_plan_catalog
from .base import error_response, success_response

logger = get_logger(__name__)

router = APIRouter(prefix="/payment", tags=["支付订阅"])
internal_router = APIRouter(prefix="/internal/payments", tags=["服务间回调"])


def _raise(e: BillingError):
    raise HTTPException(
        status_code=e.status_code,
        detail=error_response(code=e.status_code * 100 + 1, message=e.message, errors=[e.code]),
    )


# ─── Dependencies ─────────────────────────────────────────────────────────────


def get_session():
    session = DB.get_session()
    try:
        yield session
    finally:
        session.close()


def get_payments_client(request: Request):
    client = getattr(request.app.state, "payments_client", None)
    if client is None:
        _raise(GatewayError())
    return client


def get_billing_service(client=Depends(get_payments_client)) -> BillingService:
    return BillingService(client)


def require_m2m(request: Request) -> Dict:
    """支付服务调用本服务时必须携带 iss=payments / aud=core 的凭证。"""
    token = bearer_token(request.headers.get("Authorization", ""))
    try:
        return verify(
            token,
            expected_issuer=str(cfg.get("payments.m2m.payments_issuer", "payments")),
            expected_audience=str(cfg.get("payments.m2m.core_audience", "core")),
        )
    except InvalidCredential as e:
        _raise(e)


def callback_guard(request: Request) -> Optional[Dict]:
    if not cfg.get_bool("payments.callback_require_m2m", True):
        return None
    return require_m2m(request)


# ─── Request models ───────────────────────────────────────────────────────────


class CreateOrderRequest(BaseModel):
    amount: int
    currency: str = Field(default="INR", max_length=3)
    order_type: str = Field(default="other", validation_alias=AliasChoices("orderType", "order_type"))
    related_id: Optional[str] = Field(default=None, max_length=128, validation_alias=AliasChoices("relatedId", "related_id"))
    description: str = Field(default="", max_length=500)
    payment_context: Dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("paymentContext", "payment_context")
    )


class CreateSubscriptionRequest(BaseModel):
    plan_type: str = Field(..., max_length=20, validation_alias=AliasChoices("planType", "plan_type", "plan"))
    description: str = Field(default="", max_length=500)
    payment_context: Dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("paymentContext", "payment_context")
    )


class CancelSubscriptionRequest(BaseModel):
    reason: str = Field(default="", max_length=255)


class VerifyPaymentRequest(BaseModel):
    gateway_order_id: str = Field(
        ..., max_length=128,
        validation_alias=AliasChoices("gatewayOrderId", "gateway_order_id", "razorpay_order_id"),
    )
    gateway_payment_id: str = Field(
        ..., max_length=128,
        validation_alias=AliasChoices("gatewayPaymentId", "gateway_payment_id", "razorpay_payment_id"),
    )
    gateway_signature: str = Field(
        ..., max_length=512,
        validation_alias=AliasChoices("gatewaySignature", "gateway_signature", "razorpay_signature"),
    )


# ─── Orders ───────────────────────────────────────────────────────────────────


@router.post("/order", status_code=status.HTTP_201_CREATED, summary="创建一次性支付订单")
def create_payment_order(
    payload: CreateOrderRequest,
    current_user: dict = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
    session=Depends(get_session),
):
    try:
        ensure_user(session, current_user)
        result = service.create_order(
            session,
            user_id=current_user["id"],
            amount=payload.amount,
            currency=payload.currency,
            order_type=payload.order_type,
            related_id=payload.related_id,
            description=payload.description,
            context=payload.payment_context,
        )
    except BillingError as e:
        _raise(e)
    return success_response(result, message="order created")


@router.get("/orders", summary="获取当前用户订单列表")
def list_payment_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status_filter: str = Query("", alias="status", max_length=32),
    source: str = Query("local", pattern="^(local|remote)$"),
    current_user: dict = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
    session=Depends(get_session),
):
    try:
        if source == "remote":
            return success_response(service.list_remote_orders(current_user["id"], page=page, limit=limit))
        return success_response(
            service.list_orders(session, current_user["id"], page=page, limit=limit, status=status_filter)
        )
    except BillingError as e:
        _raise(e)


@router.post("/verify", summary="校验支付结果")
def verify_payment(
    payload: VerifyPaymentRequest,
    current_user: dict = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
    session=Depends(get_session),
):
    try:
        result = service.verify_payment(
            session,
            user_id=current_user["id"],
            gateway_order_id=payload.gateway_order_id,
            gateway_payment_id=payload.gateway_payment_id,
            gateway_signature=payload.gateway_signature,
        )
    except BillingError as e:
        _raise(e)
    return success_response(result, message="payment verified")


# ─── Subscriptions ────────────────────────────────────────────────────────────


@router.post("/subscription", status_code=status.HTTP_201_CREATED, summary="创建订阅")
def create_subscription(
    payload: CreateSubscriptionRequest,
    current_user: dict = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
    session=Depends(get_session),
):
    try:
        user = ensure_user(session, current_user)
        result = service.create_subscription(
            session,
            user,
            payload.plan_type,
            context=payload.payment_context,
            description=payload.description,
        )
    except BillingError as e:
        _raise(e)
    return success_response(result, message="subscription created")


@router.get("/subscriptions", summary="获取当前用户订阅列表")
def list_subscriptions(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status_filter: str = Query("", alias="status", max_length=32),
    plan_type: str = Query("", alias="planType", max_length=20),
    current_user: dict = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
    session=Depends(get_session),
):
    return success_response(
        service.list_subscriptions(
            session, current_user["id"], page=page, limit=limit, status=status_filter, plan_type=plan_type
        )
    )


@router.get("/subscriptions/current", summary="获取当前订阅概览")
def current_subscription(
    current_user: dict = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
    session=Depends(get_session),
):
    return success_response(service.get_subscription_overview(session, current_user["id"]))


@router.post("/subscriptions/current/cancel", summary="取消当前订阅")
def cancel_current_subscription(
    payload: Optional[CancelSubscriptionRequest] = None,
    current_user: dict = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
    session=Depends(get_session),
):
    try:
        result = service.cancel_subscription(session, current_user["id"], reason=payload.reason if payload else "")
    except BillingError as e:
        _raise(e)
    return success_response(result, message="subscription cancelled")


@router.get("/premium-status", summary="获取会员状态")
def premium_status(
    current_user: dict = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
    session=Depends(get_session),
):
    try:
        ensure_user(session, current_user)
        return success_response(service.get_premium_status(session, current_user["id"]))
    except BillingError as e:
        _raise(e)


# ─── Plans ────────────────────────────────────────────────────────────────────


@router.get("/plans", summary="获取当前用户可购买的套餐")
def list_plans(
    current_user: dict = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
    session=Depends(get_session),
):
    return success_response(service.resolve_plans(session, current_user["id"]))


@router.get("/plans/catalog", summary="获取完整套餐目录")
def plan_catalog(current_user: dict = Depends(get_current_user)):
    return success_response(get_plan_catalog())


@router.get("/status", summary="支付服务配置状态")
def payment_status(request: Request, current_user: dict = Depends(get_current_user)):
    client = getattr(request.app.state, "payments_client", None)
    return success_response(BillingService(client).service_status())


# ─── Callbacks ────────────────────────────────────────────────────────────────


def _ingest(session, payload: Dict[str, Any], request: Request) -> dict:
    package_id = str(cfg.get("payments.package_id", "") or "")
    try:
        result = handle_callback(session, payload, headers=request.headers, package_id=package_id)
    except BillingError as e:
        # 只有载荷本身有问题才返回 4xx
        _raise(e)
    except SQLAlchemyError as e:
        session.rollback()
        log_event(logger, E.CALLBACK_FAIL, level="error", reason=type(e).__name__)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=error_response(code=50001, message="callback processing failed"),
        )
    return success_response(result, message="callback processed")


@router.post("/callback", summary="支付服务状态回调")
def payment_callback(
    request: Request,
    payload: Dict[str, Any] = Body(...),
    caller: Optional[Dict] = Depends(callback_guard),
    session=Depends(get_session),
):
    return _ingest(session, payload, request)


@internal_router.post("/events", summary="支付服务事件推送（M2M）")
def payment_events(
    request: Request,
    payload: Dict[str, Any] = Body(...),
    caller: Dict = Depends(require_m2m),
    session=Depends(get_session),
):
    return _ingest(session, payload, request)
