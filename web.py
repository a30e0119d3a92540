import json
from typing import Any

from fastapi import APIRouter, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from apis.base import error_response
from apis.billing import internal_router as payment_events_router
from apis.billing import router as payment_router
from core.config import API_BASE, VERSION, cfg
from core.db import DB
from core.log import TRACE_HEADER, get_logger, trace_id_from_headers
from core.payments_client import PaymentsClient
from jobs.billing import start_subscription_sweep_worker

logger = get_logger(__name__)


class UnicodeJSONResponse(JSONResponse):
    """自定义 JSON 响应类，确保中文不被转义"""
    def render(self, content: Any) -> bytes:
        return json.dumps(
            content,
            ensure_ascii=False,
            allow_nan=False,
            indent=None,
            separators=(",", ":"),
        ).encode("utf-8")


app = FastAPI(
    title="Billing API",
    description="订单与订阅编排服务",
    version=VERSION,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
    default_response_class=UnicodeJSONResponse,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_trace_id(request: Request, call_next):
    tid = trace_id_from_headers(request.headers)
    response = await call_next(request)
    response.headers[TRACE_HEADER] = tid
    response.headers["X-Version"] = VERSION
    return response


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    # detail 已是统一信封时原样返回
    if isinstance(exc.detail, dict) and "success" in exc.detail:
        content = exc.detail
    else:
        content = error_response(code=exc.status_code * 100, message=str(exc.detail))
    return UnicodeJSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = [".".join(str(x) for x in err.get("loc", ())) + ": " + str(err.get("msg", "")) for err in exc.errors()]
    return UnicodeJSONResponse(
        status_code=400,
        content=error_response(code=40000, message="insufficient data", errors=errors),
    )


api_router = APIRouter(prefix=f"{API_BASE}")
api_router.include_router(payment_router)
api_router.include_router(payment_events_router)
app.include_router(api_router)


@app.on_event("startup")
def startup():
    DB.create_tables()
    try:
        app.state.payments_client = PaymentsClient.from_config()
    except ValueError as e:
        # 未配置支付服务时其余接口照常可用，支付相关接口返回 503
        logger.warning("支付服务未配置，支付功能不可用: %s", e)
        app.state.payments_client = None
    if cfg.get_bool("billing.sweep_enabled", False):
        start_subscription_sweep_worker()


@app.get("/health", tags=["默认"], include_in_schema=False)
def health():
    return {"status": "ok", "version": VERSION}
