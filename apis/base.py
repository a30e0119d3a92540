from typing import Any, List, Optional


def success_response(data: Any = None, message: str = "success") -> dict:
    return {
        "success": True,
        "data": data,
        "error": [],
        "message": message,
    }


def error_response(code: int, message: str, errors: Optional[List[str]] = None, data: Any = None) -> dict:
    return {
        "success": False,
        "code": code,
        "data": data,
        "error": list(errors or [message]),
        "message": message,
    }
