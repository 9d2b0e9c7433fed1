"""Synchronous Compass mobile-API adapter.

Endpoints used:
 1. /services/admin.svc/AuthenticateUserCredentials    (session login)
 2. /services/mobile.svc/GetNewsFeed                   (news items)
 3. /services/mobile.svc/GetMessages                   (messages)
 4. /services/mobile.svc/GetPersonalDetails            (account info)
 5. /services/FileDownload/FileRequestHandler          (attachment bytes)

Uses httpx synchronously; a pass is strictly sequential so there is no
need for asyncio.  Session state lives in the ``ASP.NET_SessionId``
cookie kept by the httpx client's cookie jar.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Protocol

import httpx

from .exceptions import AuthenticationFailure, TransportFailure
from .normalize import as_record_list, unwrap_response

logger = logging.getLogger(__name__)

USER_AGENT = "iOS/12_1_2 type/iPhone CompassEducation/4.5.3"
SESSION_COOKIE = "ASP.NET_SessionId"

PATH_AUTH = "/services/admin.svc/AuthenticateUserCredentials"
PATH_NEWSFEED = "/services/mobile.svc/GetNewsFeed"
PATH_GET_MESSAGES = "/services/mobile.svc/GetMessages"
PATH_GET_PERSONAL_DETAILS = "/services/mobile.svc/GetPersonalDetails"
PATH_DOWNLOAD_FILE = "/services/FileDownload/FileRequestHandler"

_READONLY = {"sessionstate": "readonly"}
_LOGIN_ATTEMPTS = 2


class RemoteFeedClient(Protocol):
    """What the orchestrator needs from the remote side."""

    def fetch_news_feed(self) -> List[Dict[str, Any]]: ...

    def fetch_messages(self) -> List[Dict[str, Any]]: ...

    def fetch_attachment_bytes(self, attachment_id: int) -> bytes: ...


class CompassClient:
    """Session-holding client for one Compass school host."""

    _RETRYABLE_CODES = frozenset({429, 500, 502, 503, 504})
    _MAX_RETRIES = 3

    def __init__(
        self,
        hostname: str,
        username: str,
        password: str,
        timeout: float = 20.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not (hostname and username and password):
            raise AuthenticationFailure("COMPASS_HOSTNAME / COMPASS_USERNAME / COMPASS_PASSWORD missing")
        self.hostname = hostname
        self.username = username
        self._password = password
        self._logged_in = False
        self.client = httpx.Client(
            base_url=f"https://{hostname}",
            timeout=timeout,
            headers={"User-Agent": USER_AGENT},
            transport=transport,
        )

    # ── Transport helpers ───────────────────────────────────────

    def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send with retry+backoff for transient failures."""
        for attempt in range(1, self._MAX_RETRIES + 1):
            try:
                r = self.client.request(method, path, **kwargs)
            except (httpx.ConnectError, httpx.ReadTimeout) as exc:
                if attempt < self._MAX_RETRIES:
                    wait = 2 ** attempt  # 2s, 4s
                    logger.warning(
                        "Compass network error (%s) on %s — retry %d/%d in %ds",
                        type(exc).__name__, path, attempt, self._MAX_RETRIES, wait,
                    )
                    time.sleep(wait)
                    continue
                raise TransportFailure(f"{method} {path}: {type(exc).__name__}: {exc}") from exc
            except httpx.HTTPError as exc:
                raise TransportFailure(f"{method} {path}: {type(exc).__name__}: {exc}") from exc
            if r.status_code in self._RETRYABLE_CODES and attempt < self._MAX_RETRIES:
                wait = 2 ** attempt
                logger.warning(
                    "Compass HTTP %d from %s — retry %d/%d in %ds",
                    r.status_code, path, attempt, self._MAX_RETRIES, wait,
                )
                time.sleep(wait)
                continue
            return r
        raise TransportFailure(f"{method} {path}: all {self._MAX_RETRIES} retries exhausted")

    @staticmethod
    def _check(r: httpx.Response, label: str) -> None:
        if r.status_code in (401, 403):
            raise AuthenticationFailure(f"{label}: HTTP {r.status_code} (session rejected)")
        if r.status_code != 200:
            raise TransportFailure(f"{label}: HTTP {r.status_code}")

    # ── Session ─────────────────────────────────────────────────

    def login(self) -> None:
        """Establish a session.  Raises ``AuthenticationFailure``.

        The first attempt is sometimes answered by the CDN without a
        session cookie, so one retry is made before giving up.
        """
        body = {"username": self.username, "password": self._password, "sessionstate": "readonly"}
        for attempt in range(1, _LOGIN_ATTEMPTS + 1):
            r = self._send("POST", PATH_AUTH, json=body)
            if r.status_code == 200 and self._has_session():
                self._logged_in = True
                logger.info("Logged in to %s as %s.", self.hostname, self.username)
                return
            logger.warning(
                "Compass login attempt %d/%d gave HTTP %d without a session cookie.",
                attempt, _LOGIN_ATTEMPTS, r.status_code,
            )
        raise AuthenticationFailure(f"login to {self.hostname} failed for user {self.username}")

    def _has_session(self) -> bool:
        # By name across every domain; the CDN may set the cookie twice.
        return any(c.name == SESSION_COOKIE and c.value for c in self.client.cookies.jar)

    def _ensure_login(self) -> None:
        if not self._logged_in:
            self.login()

    def _post_json(self, path: str, label: str) -> Any:
        self._ensure_login()
        r = self._send("POST", path, params=_READONLY)
        self._check(r, label)
        try:
            data = r.json()
        except ValueError:
            ct = r.headers.get("content-type", "")
            raise TransportFailure(f"{label}: non-JSON response (content-type={ct!r})") from None
        return unwrap_response(data)

    # ── Endpoints ───────────────────────────────────────────────

    def fetch_news_feed(self) -> List[Dict[str, Any]]:
        return as_record_list(self._post_json(PATH_NEWSFEED, "GetNewsFeed"), "GetNewsFeed")

    def fetch_messages(self) -> List[Dict[str, Any]]:
        return as_record_list(self._post_json(PATH_GET_MESSAGES, "GetMessages"), "GetMessages")

    def fetch_personal_details(self) -> Dict[str, Any]:
        """Account details for the logged-in user.

        Not part of ``RemoteFeedClient`` and not used by a sync pass; kept
        for callers that need the account's user id or contact details.
        """
        data = self._post_json(PATH_GET_PERSONAL_DETAILS, "GetPersonalDetails")
        return data if isinstance(data, dict) else {}

    def fetch_attachment_bytes(self, attachment_id: int) -> bytes:
        self._ensure_login()
        label = f"FileRequestHandler(file={attachment_id})"
        r = self._send(
            "GET", PATH_DOWNLOAD_FILE,
            params={"FileDownloadType": 1, "file": attachment_id},
        )
        self._check(r, label)
        return r.content

    def close(self) -> None:
        self.client.close()
