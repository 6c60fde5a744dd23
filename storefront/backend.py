from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import requests

from storefront.errors import AuthError, BackendError


log = logging.getLogger(__name__)

FILTER_OPS = ("eq", "neq", "gt", "gte", "lt", "lte", "is", "in", "ilike")

Filters = Dict[str, Any]


@dataclass
class AuthSession:
    access_token: str
    refresh_token: str
    expires_at: int
    user_id: str
    email: str = ""

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> "AuthSession":
        user = data.get("user") or {}
        expires_at = data.get("expires_at")
        if not expires_at:
            expires_at = int(time.time()) + int(data.get("expires_in") or 3600)
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or "",
            expires_at=int(expires_at),
            user_id=str(user.get("id") or ""),
            email=user.get("email") or "",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at,
            "user_id": self.user_id,
            "email": self.email,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["AuthSession"]:
        if not data or not data.get("access_token"):
            return None
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or "",
            expires_at=int(data.get("expires_at") or 0),
            user_id=str(data.get("user_id") or ""),
            email=data.get("email") or "",
        )


def _format_value(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def filter_conditions(raw: Any) -> List[Tuple[str, Any]]:
    """Normalise one filter value to [(op, value), ...].

    A plain value means equality, a tuple is (op, value) and a list of tuples
    combines several conditions on the same column.
    """
    if isinstance(raw, list) and raw and all(isinstance(x, tuple) for x in raw):
        conds = list(raw)
    elif isinstance(raw, tuple):
        conds = [raw]
    else:
        conds = [("eq", raw)]
    for op, _ in conds:
        if op not in FILTER_OPS:
            raise ValueError(f"Unsupported filter operator: {op}")
    return conds


def encode_filters(filters: Optional[Filters]) -> List[Tuple[str, str]]:
    """{"status": ("neq", "cancelled"), "user_id": "u1"} -> [("status", "neq.cancelled"), ("user_id", "eq.u1")]"""
    params: List[Tuple[str, str]] = []
    for column, raw in (filters or {}).items():
        for op, value in filter_conditions(raw):
            if op == "in":
                inner = ",".join(_format_value(v) for v in value)
                params.append((column, f"in.({inner})"))
            else:
                params.append((column, f"{op}.{_format_value(value)}"))
    return params


class HostedBackend:
    """REST client for the hosted database and its auth endpoints.

    Row access is filtered server-side by the bearer token: the anon key for
    public reads, a user access token for user-scoped rows, or the service key
    for server-side payment code.
    """

    def __init__(
        self,
        url: str,
        api_key: str,
        access_token: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: int = 20,
    ):
        self.url = (url or "").rstrip("/")
        self.api_key = api_key
        self.access_token = access_token
        self.timeout = timeout

        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json"})

    def with_token(self, access_token: Optional[str]) -> "HostedBackend":
        return HostedBackend(self.url, self.api_key, access_token=access_token, session=self.session, timeout=self.timeout)

    # -------------------------
    # HTTP plumbing
    # -------------------------
    def _headers(self, prefer: Optional[str] = None, token: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {token or self.access_token or self.api_key}",
            "Content-Type": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[Iterable[Tuple[str, str]]] = None,
        json_body: Any = None,
        prefer: Optional[str] = None,
        token: Optional[str] = None,
    ) -> Any:
        url = f"{self.url}{path}"
        try:
            r = self.session.request(
                method,
                url,
                params=list(params or []),
                json=json_body,
                headers=self._headers(prefer=prefer, token=token),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise BackendError(f"Backend unreachable: {e}") from e

        if r.status_code >= 400:
            raise self._error_from_response(r)
        if r.status_code == 204 or not r.content:
            return None
        return r.json()

    @staticmethod
    def _error_from_response(r: requests.Response) -> BackendError:
        code = None
        message = f"HTTP {r.status_code}"
        try:
            data = r.json()
        except ValueError:
            data = None
        if isinstance(data, dict):
            code = data.get("code") or data.get("error_code")
            message = (
                data.get("message")
                or data.get("msg")
                or data.get("error_description")
                or data.get("error")
                or message
            )
        return BackendError(str(message), status_code=r.status_code, code=str(code) if code else None)

    # -------------------------
    # Tables
    # -------------------------
    def select(
        self,
        table: str,
        columns: str = "*",
        filters: Optional[Filters] = None,
        order: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        params = [("select", columns)] + encode_filters(filters)
        if order:
            params.append(("order", order))
        if limit is not None:
            params.append(("limit", str(int(limit))))
        return self._request("GET", f"/rest/v1/{table}", params=params) or []

    def insert(self, table: str, rows: Union[Dict[str, Any], List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
        return self._request("POST", f"/rest/v1/{table}", json_body=rows, prefer="return=representation") or []

    def update(self, table: str, values: Dict[str, Any], filters: Filters) -> List[Dict[str, Any]]:
        if not filters:
            raise ValueError("update requires at least one filter")
        return (
            self._request(
                "PATCH",
                f"/rest/v1/{table}",
                params=encode_filters(filters),
                json_body=values,
                prefer="return=representation",
            )
            or []
        )

    def delete(self, table: str, filters: Filters) -> List[Dict[str, Any]]:
        if not filters:
            raise ValueError("delete requires at least one filter")
        return (
            self._request("DELETE", f"/rest/v1/{table}", params=encode_filters(filters), prefer="return=representation")
            or []
        )

    def upsert(
        self,
        table: str,
        rows: Union[Dict[str, Any], List[Dict[str, Any]]],
        on_conflict: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        params = [("on_conflict", on_conflict)] if on_conflict else []
        return (
            self._request(
                "POST",
                f"/rest/v1/{table}",
                params=params,
                json_body=rows,
                prefer="resolution=merge-duplicates,return=representation",
            )
            or []
        )

    # -------------------------
    # Auth
    # -------------------------
    def _auth_call(self, path: str, body: Dict[str, Any], params=None) -> Dict[str, Any]:
        try:
            return self._request("POST", f"/auth/v1/{path}", params=params, json_body=body, token=self.api_key) or {}
        except BackendError as e:
            if e.status_code in (400, 401, 403, 422):
                raise AuthError(e.message) from e
            raise

    def sign_up(self, email: str, password: str) -> AuthSession:
        data = self._auth_call("signup", {"email": email, "password": password})
        if not data.get("access_token"):
            # email confirmation pending; no session is issued yet
            user = data.get("user") or data
            return AuthSession("", "", 0, str(user.get("id") or ""), user.get("email") or email)
        return AuthSession.from_response(data)

    def sign_in(self, email: str, password: str) -> AuthSession:
        data = self._auth_call("token", {"email": email, "password": password}, params=[("grant_type", "password")])
        return AuthSession.from_response(data)

    def refresh_session(self, refresh_token: str) -> AuthSession:
        if not refresh_token:
            raise AuthError("No refresh token")
        data = self._auth_call("token", {"refresh_token": refresh_token}, params=[("grant_type", "refresh_token")])
        return AuthSession.from_response(data)

    def get_user(self, access_token: str) -> Dict[str, Any]:
        try:
            return self._request("GET", "/auth/v1/user", token=access_token) or {}
        except BackendError as e:
            if e.is_auth_error:
                raise AuthError(e.message) from e
            raise

    def sign_out(self, access_token: str) -> None:
        try:
            self._request("POST", "/auth/v1/logout", token=access_token)
        except BackendError as e:
            # an already-expired token is as good as signed out
            if not e.is_auth_error:
                raise
            log.info("Sign-out with expired token: %s", e.message)
