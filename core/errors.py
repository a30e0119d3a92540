"""计费核心的异常体系，status_code 决定 API 层返回的 HTTP 状态。"""

from typing import Optional


class BillingError(Exception):
    code = "BILLING_ERROR"
    status_code = 500
    default_message = "billing error"

    def __init__(self, message: str = "", detail: Optional[str] = None):
        self.message = message or self.default_message
        # detail 仅用于日志，不返回给调用方
        self.detail = detail or ""
        super().__init__(self.message)


class InvalidRequest(BillingError):
    code = "INVALID_REQUEST"
    status_code = 400
    default_message = "insufficient data"


class InvalidAmount(InvalidRequest):
    code = "INVALID_AMOUNT"
    status_code = 400
    default_message = "insufficient data: amount must be a positive integer"


class InvalidPlan(InvalidRequest):
    code = "INVALID_PLAN"
    status_code = 400
    default_message = "insufficient data: unknown plan type"


class TrialNotEligible(BillingError):
    code = "TRIAL_NOT_ELIGIBLE"
    status_code = 400
    default_message = "trial not available for this user"


class AlreadySubscribed(BillingError):
    code = "ALREADY_SUBSCRIBED"
    status_code = 409
    default_message = "already subscribed"


class GatewayError(BillingError):
    code = "GATEWAY_ERROR"
    status_code = 503
    default_message = "payment service unavailable"


class GatewayUnavailable(GatewayError):
    code = "GATEWAY_UNAVAILABLE"


class GatewayTimeout(GatewayUnavailable):
    code = "GATEWAY_TIMEOUT"


class GatewayRejected(GatewayError):
    """网关返回 4xx：请求本身有问题，重试无意义。"""

    code = "GATEWAY_REJECTED"
    status_code = 400
    default_message = "payment service rejected the request"

    def __init__(self, message: str = "", detail: Optional[str] = None, remote_status: int = 400):
        super().__init__(message, detail)
        self.remote_status = remote_status


class InvalidCredential(BillingError):
    code = "INVALID_M2M_TOKEN"
    status_code = 401
    default_message = "invalid service credential"


class NotFound(BillingError):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "not found"


class UnknownEntity(NotFound):
    code = "UNKNOWN_ENTITY"
    default_message = "callback references an unknown entity"


class UnknownEvent(BillingError):
    code = "UNKNOWN_EVENT"
    status_code = 400
    default_message = "unknown callback event"


class IllegalTransition(BillingError):
    code = "ILLEGAL_TRANSITION"
    status_code = 409
    default_message = "illegal status transition"

    def __init__(self, entity: str, current: str, target: str, message: str = ""):
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(message or f"{entity} cannot move from {current} to {target}")


class PaymentConflict(IllegalTransition):
    code = "PAYMENT_CONFLICT"

    def __init__(self, current_payment_id: str, new_payment_id: str):
        self.current_payment_id = current_payment_id
        self.new_payment_id = new_payment_id
        super().__init__(
            "order",
            "paid",
            "paid",
            message=f"order already paid with {current_payment_id}, got {new_payment_id}",
        )


class PaymentVerificationFailed(BillingError):
    code = "PAYMENT_VERIFICATION_FAILED"
    status_code = 400
    default_message = "payment verification failed"


class DuplicateEvent(BillingError):
    """幂等短路：同一投递已处理过，调用方按成功处理。"""

    code = "DUPLICATE_EVENT"
    status_code = 200
    default_message = "event already processed"
