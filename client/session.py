from typing import Dict, Optional

from core.log import get_logger
from core.events import log_event, E
from .events import EventBus, EVENT_LOGOUT

logger = get_logger(__name__)


class ApiSession:
    """
    登录态容器：login 成功后 start()，主动退出或收到 401 时 clear()。
    由调用方显式创建并注入 BillingClient。
    """

    def __init__(self, base_url: str, bus: Optional[EventBus] = None):
        self.base_url = str(base_url or "").rstrip("/")
        self.bus = bus or EventBus()
        self._token: Optional[str] = None
        self.username: str = ""

    @property
    def token(self) -> Optional[str]:
        return self._token

    @property
    def is_authenticated(self) -> bool:
        return bool(self._token)

    def start(self, token: str, username: str = "") -> None:
        if not token:
            raise ValueError("token 不能为空")
        self._token = token
        self.username = username

    def clear(self, reason: str = "logout") -> None:
        was_authenticated = self.is_authenticated
        self._token = None
        self.username = ""
        if was_authenticated:
            log_event(logger, E.CLIENT_SESSION_CLEAR, reason=reason)
            self.bus.emit(EVENT_LOGOUT, {"reason": reason})

    def auth_headers(self) -> Dict[str, str]:
        if not self._token:
            return {}
        return {"Authorization": f"Bearer {self._token}"}
