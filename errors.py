# errors.py
from typing import Any, Dict, Optional


class AppError(Exception):
    """Failure with a stable code, a caller-facing message and an HTTP status."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 400,
        details: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.headers = headers or {}

    def to_payload(self) -> Dict[str, Any]:
        return {"error": {"code": self.code, "message": self.message, **self.details}}

    def __repr__(self) -> str:
        return f"AppError({self.code!r}, {self.message!r}, {self.status_code})"
