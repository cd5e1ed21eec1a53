"""
计费接口客户端

所有请求走同一个 _request()：
    • 网络异常 / 非 JSON 响应 -> TransportError，并派发 EVENT_NETWORK_ERROR
    • 401 -> 清空 ApiSession（派发 EVENT_LOGOUT），抛 UnauthorizedError
    • 业务码非 0 -> ApiError，并派发 EVENT_API_ERROR
外部支付只返回跳转地址，调用方需要之后重新查询订单确认结果。
"""

from typing import Any, Dict, Optional

import requests

from core.config import API_BASE
from core.log import get_logger
from core.events import log_event, E
from .errors import ApiError, TransportError, UnauthorizedError
from .events import EVENT_API_ERROR, EVENT_NETWORK_ERROR
from .session import ApiSession

logger = get_logger(__name__)


class BillingClient:
    def __init__(self, session: ApiSession, timeout: float = 10, http: Optional[requests.Session] = None):
        self.session = session
        self.bus = session.bus
        self.timeout = timeout
        self.http = http or requests.Session()

    def _url(self, path: str) -> str:
        return f"{self.session.base_url}{API_BASE}{path}"

    def _request(self, method: str, path: str, auth: bool = True, **kwargs) -> Any:
        headers = dict(kwargs.pop("headers", None) or {})
        if auth:
            headers.update(self.session.auth_headers())
        try:
            resp = self.http.request(method, self._url(path), headers=headers, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            log_event(logger, E.CLIENT_REQUEST_FAIL, level="warning", method=method, path=path, err=e)
            self.bus.emit(EVENT_NETWORK_ERROR, {"method": method, "path": path, "message": str(e)})
            raise TransportError(f"网络请求失败: {e}") from e

        if resp.status_code == 401 and auth:
            self.session.clear(reason="unauthorized")
            raise UnauthorizedError(40100, "登录已失效，请重新登录", status_code=401)

        try:
            body = resp.json()
        except ValueError:
            log_event(logger, E.CLIENT_REQUEST_FAIL, level="warning", method=method, path=path, status=resp.status_code)
            self.bus.emit(EVENT_NETWORK_ERROR, {"method": method, "path": path, "status": resp.status_code})
            raise TransportError(f"接口返回非 JSON 数据: HTTP {resp.status_code}", status_code=resp.status_code)

        # HTTPException 的 detail 里同样是统一信封
        envelope = body.get("detail") if isinstance(body, dict) and isinstance(body.get("detail"), dict) else body
        if isinstance(envelope, dict) and envelope.get("code") == 0 and resp.ok:
            return envelope.get("data")

        if isinstance(envelope, dict) and "code" in envelope:
            err = ApiError(int(envelope.get("code") or 0), str(envelope.get("message") or ""), resp.status_code, envelope.get("data"))
        else:
            err = ApiError(resp.status_code * 100, str(body.get("detail") if isinstance(body, dict) else body), resp.status_code)
        if resp.status_code == 401:
            err = UnauthorizedError(err.code, err.message, status_code=401, data=err.data)
        self.bus.emit(EVENT_API_ERROR, {"method": method, "path": path, "code": err.code, "message": err.message})
        raise err

    # ── 认证 ──────────────────────────────────────────────────────────────────
    def login(self, username: str, password: str) -> Dict:
        data = self._request("POST", "/auth/login", auth=False, data={"username": username, "password": password})
        self.session.start(data["access_token"], username=username)
        return data

    def logout(self) -> None:
        self.session.clear(reason="logout")

    def me(self) -> Dict:
        return self._request("GET", "/auth/me")

    # ── 套餐与订单 ────────────────────────────────────────────────────────────
    def list_plans(self):
        return self._request("GET", "/plans")

    def create_order(self, plan_id: int, coupon_code: str = "", note: str = "") -> Dict:
        return self._request("POST", "/billing/orders", json={"plan_id": plan_id, "coupon_code": coupon_code, "note": note})

    def get_order(self, order_no: str) -> Dict:
        return self._request("GET", f"/billing/orders/{order_no}")

    def list_orders(self, status: str = "", page: int = 1, page_size: int = 20) -> Dict:
        return self._request("GET", "/billing/orders", params={"status": status, "page": page, "page_size": page_size})

    def cancel_order(self, order_no: str, reason: str = "") -> Dict:
        return self._request("POST", f"/billing/orders/{order_no}/cancel", json={"reason": reason})

    def pay(self, order_no: str, method: str) -> Dict:
        """content_type 为 settled 时已结算；为 url 时需跳转 pay_url，结果以后续查询为准。"""
        return self._request("POST", "/billing/pay", json={"order_no": order_no, "method": method})

    def verify_coupon(self, code: str, plan_id: Optional[int] = None, amount: str = "") -> Dict:
        return self._request("POST", "/coupons/verify", json={"code": code, "plan_id": plan_id, "amount": amount})

    # ── 余额 ──────────────────────────────────────────────────────────────────
    def redeem(self, code: str) -> Dict:
        return self._request("POST", "/recharge/redeem", json={"code": code})

    def recharge_online(self, amount: str, method: str) -> Dict:
        return self._request("POST", "/recharge/online", json={"amount": str(amount), "method": method})

    def profile(self) -> Dict:
        return self._request("GET", "/user/profile")

    def balance_logs(self, limit: int = 50):
        return self._request("GET", "/user/balance/logs", params={"limit": limit})

    # ── 邀请 ──────────────────────────────────────────────────────────────────
    def invite_info(self) -> Dict:
        return self._request("GET", "/invite")

    def invite_records(self, page: int = 1, page_size: int = 20) -> Dict:
        return self._request("GET", "/invite/records", params={"page": page, "page_size": page_size})
