"""
sap_gateway.core.session - SAP Gateway session state
====================================================

Keeps the per-(host, service path, user) state SAP Gateway expects a
client to carry between calls:

- CSRF token for modifying requests
- Session cookies (SAP_SESSIONID_*, MYSAPSSO2, ...)
- SAP-ContextId for stateful scenarios

State lives in an injected key/value store. Store failures are logged and
treated as "no session" so a broken cache never blocks a request.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional
import hashlib
import logging
import time

from sap_gateway.core.store import KeyValueStore

logger = logging.getLogger("sap_gateway.session")

SESSION_TIMEOUT = 30 * 60.0
CSRF_TIMEOUT = 10 * 60.0
SESSION_PREFIX = "sap_session_"

_UNUSABLE_TOKENS = {"required", "fetch"}


@dataclass
class SapSession:
    """
    Session record as stored in the key/value store.

    ``expires_at`` is always ``last_activity + session timeout``.
    """
    csrf_token: Optional[str] = None
    cookies: List[str] = field(default_factory=list)
    context_id: Optional[str] = None
    last_activity: float = 0.0
    expires_at: float = 0.0


def is_usable_csrf_token(token: Optional[str]) -> bool:
    """A token of ``Required``/``Fetch`` (any case) is a server request, not a token."""
    return bool(token) and token.strip().lower() not in _UNUSABLE_TOKENS


def session_key(host: str, service_path: str, username: Optional[str] = None) -> str:
    """
    Build the store key for a session.

    The username is hashed so neither it nor (obviously) the password
    ends up in the key.

    Examples
    --------
    >>> session_key("https://S4.example.com/", "/sap/opu/odata/sap/API_X/")
    'sap_session_https://s4.example.com_sap/opu/odata/sap/api_x'
    """
    host_part = (host or "").lower().rstrip("/")
    path_part = (service_path or "").lower().strip("/")
    key = f"{SESSION_PREFIX}{host_part}_{path_part}"
    if username:
        key += "-" + hashlib.sha256(username.encode("utf-8")).hexdigest()[:16]
    return key


def _cookie_name(cookie: str) -> str:
    return cookie.split("=", 1)[0].strip()


def merge_cookies(existing: Iterable[str], incoming: Iterable[str]) -> List[str]:
    """
    Merge ``name=value`` cookies by name.

    Incoming cookies replace same-named ones in place; new names are
    appended. Attributes after the first ``;`` are dropped.
    """
    merged: Dict[str, str] = {}
    for cookie in existing:
        cookie = cookie.split(";", 1)[0].strip()
        if cookie:
            merged[_cookie_name(cookie)] = cookie
    for raw in incoming:
        cookie = (raw or "").split(";", 1)[0].strip()
        if cookie and "=" in cookie:
            merged[_cookie_name(cookie)] = cookie
    return list(merged.values())


class SessionManager:
    """
    Owns the SAP Gateway session for one (host, service path, user).

    Parameters
    ----------
    store : KeyValueStore
        Where session records are kept
    host : str
        Gateway host URL
    service_path : str
        OData service path
    username : str, optional
        Caller identity; hashed into the key
    session_timeout : float
        Seconds after last activity before the whole session expires
    csrf_timeout : float
        Seconds after last activity before the CSRF token is considered stale
    clock : callable, optional
        Returns the current time in epoch seconds

    Examples
    --------
    >>> sm = SessionManager(InMemoryStore(), "https://s4", "/sap/opu/odata/sap/X")
    >>> sm.update_csrf_token("abc123")
    >>> sm.get_csrf_token()
    'abc123'
    """

    def __init__(
        self,
        store: KeyValueStore,
        host: str,
        service_path: str,
        username: Optional[str] = None,
        *,
        session_timeout: float = SESSION_TIMEOUT,
        csrf_timeout: float = CSRF_TIMEOUT,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.store = store
        self.key = session_key(host, service_path, username)
        self.session_timeout = float(session_timeout)
        self.csrf_timeout = float(csrf_timeout)
        self.clock = clock or time.time

    # ---------------- record access ----------------

    def get_session(self) -> Optional[SapSession]:
        """Current session, or None if absent, expired or unreadable."""
        try:
            record = self.store.get(self.key)
            if not isinstance(record, SapSession):
                return None
            if self.clock() >= record.expires_at:
                self.store.delete(self.key)
                return None
            return record
        except Exception as e:
            logger.warning("Session lookup failed for %s: %s", self.key, e)
            return None

    def set_session(
        self,
        *,
        csrf_token: Optional[str] = None,
        cookies: Optional[List[str]] = None,
        context_id: Optional[str] = None,
    ) -> None:
        """
        Merge the given fields into the session and refresh its expiry.

        Fields left as None keep their previous value.
        """
        try:
            now = self.clock()
            current = self.get_session() or SapSession()
            updated = replace(
                current,
                csrf_token=csrf_token if csrf_token is not None else current.csrf_token,
                cookies=list(cookies) if cookies is not None else list(current.cookies),
                context_id=context_id if context_id is not None else current.context_id,
                last_activity=now,
                expires_at=now + self.session_timeout,
            )
            self.store.set(self.key, updated)
        except Exception as e:
            logger.warning("Session update failed for %s: %s", self.key, e)

    def clear_session(self) -> None:
        try:
            self.store.delete(self.key)
        except Exception as e:
            logger.warning("Session clear failed for %s: %s", self.key, e)

    # ---------------- CSRF ----------------

    def get_csrf_token(self) -> Optional[str]:
        """
        Cached CSRF token, or None when it must be (re)fetched.

        A token older than ``csrf_timeout`` since last activity is treated
        as absent even if the session itself is still alive.
        """
        session = self.get_session()
        if session is None or not session.csrf_token:
            return None
        if self.clock() - session.last_activity > self.csrf_timeout:
            return None
        return session.csrf_token

    def update_csrf_token(self, token: Optional[str]) -> None:
        if not is_usable_csrf_token(token):
            return
        self.set_session(csrf_token=token)

    def invalidate_csrf_token(self) -> None:
        """Forget the CSRF token but keep cookies and context id."""
        try:
            session = self.get_session()
            if session is not None and session.csrf_token:
                self.store.set(self.key, replace(session, csrf_token=None))
        except Exception as e:
            logger.warning("CSRF invalidation failed for %s: %s", self.key, e)

    # ---------------- cookies / context ----------------

    def get_cookie_header(self) -> Optional[str]:
        session = self.get_session()
        if session is None or not session.cookies:
            return None
        return "; ".join(session.cookies)

    def update_cookies(self, set_cookie_headers: Iterable[str]) -> None:
        """Merge raw ``Set-Cookie`` values into the session cookie jar."""
        incoming = [c for c in set_cookie_headers if c]
        if not incoming:
            return
        session = self.get_session()
        existing = session.cookies if session else []
        self.set_session(cookies=merge_cookies(existing, incoming))

    def get_context_id(self) -> Optional[str]:
        session = self.get_session()
        return session.context_id if session else None

    def update_context_id(self, context_id: Optional[str]) -> None:
        if context_id:
            self.set_session(context_id=context_id)

    # ---------------- maintenance ----------------

    def cleanup_expired(self) -> int:
        """Remove every expired session in the store. Returns the count removed."""
        removed = 0
        try:
            now = self.clock()
            for key in list(self.store.keys()):
                if not key.startswith(SESSION_PREFIX):
                    continue
                record = self.store.get(key)
                if isinstance(record, SapSession) and now >= record.expires_at:
                    self.store.delete(key)
                    removed += 1
        except Exception as e:
            logger.warning("Session cleanup failed: %s", e)
        return removed


# ---------------------------------------------------------------------------
# Gateway header plumbing
# ---------------------------------------------------------------------------

def header_value(headers: Mapping[str, Any], name: str) -> Optional[str]:
    """Case-insensitive header lookup."""
    wanted = name.lower()
    for k, v in headers.items():
        if k.lower() == wanted:
            if isinstance(v, (list, tuple)):
                return str(v[0]) if v else None
            return v
    return None


def apply_session_headers(headers: Dict[str, str], sessions: SessionManager) -> Dict[str, str]:
    """
    Add Gateway session headers to an outgoing request.

    Adds Cookie and SAP-ContextId from the session plus the standard
    Gateway compatibility headers. Caller-supplied values win.
    """
    cookie = sessions.get_cookie_header()
    if cookie and not header_value(headers, "Cookie"):
        headers["Cookie"] = cookie
    context_id = sessions.get_context_id()
    if context_id and not header_value(headers, "SAP-ContextId"):
        headers["SAP-ContextId"] = context_id
    headers.setdefault("Prefer", "return=representation")
    headers.setdefault("sap-message-scope", "BusinessObject")
    headers.setdefault("DataServiceVersion", "2.0")
    headers.setdefault("MaxDataServiceVersion", "2.0")
    return headers


def update_session_from_response(
    sessions: SessionManager,
    headers: Mapping[str, Any],
    set_cookies: Iterable[str] = (),
) -> Optional[str]:
    """
    Store cookies, context id and CSRF token carried by a response.

    Returns the usable CSRF token found in the response, if any.
    """
    sessions.update_cookies(set_cookies)
    sessions.update_context_id(header_value(headers, "sap-contextid"))
    token = header_value(headers, "x-csrf-token")
    if is_usable_csrf_token(token):
        sessions.update_csrf_token(token)
        return token
    return None
