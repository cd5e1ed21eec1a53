from typing import Any


def success_response(data: Any = None, message: str = "success"):
    return {
        "code": 0,
        "message": message,
        "data": data,
    }


def error_response(code: int, message: str, data: Any = None):
    return {
        "code": code,
        "message": message,
        "data": data,
    }


def client_ip(request) -> str:
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else ""
