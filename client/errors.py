from typing import Any, Dict, Optional


class ClientError(Exception):
    """客户端调用失败的基类。"""


class TransportError(ClientError):
    """网络不可达、超时或服务端返回非 JSON，可重试。"""

    retryable = True

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ApiError(ClientError):
    """服务端返回了非 0 业务码。"""

    retryable = False

    def __init__(self, code: int, message: str, status_code: int = 0, data: Optional[Dict[str, Any]] = None):
        super().__init__(f"[{code}] {message}")
        self.code = code
        self.message = message
        self.status_code = status_code
        self.data = data or {}


class UnauthorizedError(ApiError):
    """401：登录态失效，会话已被清空。"""
