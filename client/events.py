"""
事件总线

API 层通过注入的 EventBus 通知界面层（退出登录、请求失败等），
不使用模块级单例，测试中可以各自创建互不干扰的实例。
"""

import threading
from collections import defaultdict
from typing import Any, Callable, Dict, List

from core.log import get_logger

logger = get_logger(__name__)

EVENT_LOGOUT = "auth:logout"
EVENT_API_ERROR = "api:error"
EVENT_NETWORK_ERROR = "api:network_error"

Handler = Callable[[Any], None]


class EventBus:
    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._lock = threading.Lock()

    def on(self, event: str, handler: Handler) -> Callable[[], None]:
        """订阅事件，返回取消订阅的函数。"""
        with self._lock:
            self._handlers[event].append(handler)
        return lambda: self.off(event, handler)

    def off(self, event: str, handler: Handler) -> None:
        with self._lock:
            handlers = self._handlers.get(event) or []
            if handler in handlers:
                handlers.remove(handler)

    def emit(self, event: str, payload: Any = None) -> int:
        """同步派发，单个监听器异常只记录日志，不影响其余监听器。返回调用的监听器数量。"""
        with self._lock:
            handlers = list(self._handlers.get(event) or [])
        for handler in handlers:
            try:
                handler(payload)
            except Exception:
                logger.exception("事件监听器执行失败: event=%s", event)
        return len(handlers)
