import json
import time
from typing import Any

from fastapi import FastAPI, Request, APIRouter
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from apis.auth import router as auth_router
from apis.user import router as user_router
from apis.plan import router as plan_router
from apis.billing import router as billing_router
from apis.coupon import router as coupon_router
from apis.recharge import router as recharge_router
from apis.invite import router as invite_router
from core.config import cfg, get_bool, VERSION, API_BASE
from core.db import DB
from core.errors import BillingError
from core.log import get_logger, set_trace_id
from core.events import log_event, E
from jobs.billing import start_billing_sweep_worker

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
    title="NyanPass Billing API",
    description="套餐订单、优惠券、支付与余额账本接口",
    version=VERSION,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
    swagger_ui_parameters={
        "persistAuthorization": True,
        "withCredentials": True,
    },
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
async def add_custom_header(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Version"] = VERSION
    response.headers["Server"] = cfg.get("app_name", "NyanPass")
    return response


@app.middleware("http")
async def trace_request(request: Request, call_next):
    tid = set_trace_id(request.headers.get("X-Trace-Id"))
    start = time.perf_counter()
    response = await call_next(request)
    duration_ms = int((time.perf_counter() - start) * 1000)
    response.headers["X-Trace-Id"] = tid
    if request.url.path.startswith(API_BASE):
        logger.info("%s %s -> %s (%sms)", request.method, request.url.path, response.status_code, duration_ms)
    return response


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    return UnicodeJSONResponse(status_code=exc.status_code, content=exc.to_dict())


api_router = APIRouter(prefix=f"{API_BASE}")
api_router.include_router(auth_router)
api_router.include_router(user_router)
api_router.include_router(plan_router)
api_router.include_router(billing_router)
api_router.include_router(coupon_router)
api_router.include_router(recharge_router)
api_router.include_router(invite_router)
app.include_router(api_router)


@app.on_event("startup")
async def on_startup():
    DB.create_tables()
    if get_bool("billing.sweep_enabled", True):
        start_billing_sweep_worker()
    log_event(logger, E.SYSTEM_STARTUP, version=VERSION, api_base=API_BASE)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "web:app",
        host=str(cfg.get("server.host", "0.0.0.0")),
        port=int(cfg.get("server.port", 8001)),
        reload=False,
    )
