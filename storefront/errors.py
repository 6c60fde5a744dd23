from __future__ import annotations

from typing import Any, Dict, Optional


class ShopError(Exception):
    """Base error; rendered as {"ok": false, "error": message} with `status`."""

    status = 400

    def __init__(self, message: str = "", status: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message or self.__class__.__name__
        if status is not None:
            self.status = status

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": False, "error": self.message}


class ValidationError(ShopError):
    status = 400


class AuthError(ShopError):
    status = 401


class SessionUnavailable(AuthError):
    def __init__(self, message: str = "Session not available") -> None:
        super().__init__(message)


class PermissionDenied(ShopError):
    status = 403

    def __init__(self, message: str = "Access denied") -> None:
        super().__init__(message)


class NotFound(ShopError):
    status = 404


class ConflictError(ShopError):
    status = 409


class BackendError(ShopError):
    """Error returned by the hosted database (REST or auth endpoint)."""

    status = 502

    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code

    @property
    def is_auth_error(self) -> bool:
        if self.status_code in (401, 403):
            return True
        if self.code == "PGRST301":
            return True
        return "JWT" in (self.message or "")


class PaymentError(ShopError):
    status = 502


class UploadError(ShopError):
    status = 502
