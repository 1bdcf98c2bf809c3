import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import AsyncIterable, Protocol, Sequence
from urllib.parse import urlsplit

import structlog

from usagewatch.errors import LoginCancelled
from usagewatch.events import SESSION_STATUS_CHANGED, EventBus
from usagewatch.models import Credential, ValidationResult
from usagewatch.provider.base import UsageProvider
from usagewatch.provider.claude import SESSION_COOKIE_NAME
from usagewatch.store import CredentialStore

logger = structlog.get_logger()

AUTH_DOMAIN = "claude.ai"
SESSION_KEY_PREFIX = "sk-ant-sid01-"

# claude.ai redirects to one of these after a successful login
LOGIN_SUCCESS_PREFIXES: "tuple[str, ...]" = (
    "/new",
    "/chat",
    "/project",
    "/recents",
    "/settings",
)

_DEFAULT_SETTLE_DELAY_SECONDS = 0.5
_DEFAULT_PROBE_ATTEMPTS = 3
_DEFAULT_PROBE_RETRY_DELAY_SECONDS = 2.0


@dataclass(frozen=True, slots=True)
class Cookie:
    name: "str"
    value: "str"
    domain: "str" = ""


class BrowserSession(Protocol):
    """
    BrowserSession is the cookie jar of the externally hosted
    login window.
    """

    async def get_cookies(self, domain: "str") -> "Sequence[Cookie]": ...

    async def clear_cookies(self, domain: "str") -> "None": ...


def _is_auth_host(host: "str") -> "bool":
    return host == AUTH_DOMAIN or host.endswith(f".{AUTH_DOMAIN}")


def is_login_success_url(url: "str") -> "bool":
    """
    checks whether a navigation lands on a post-login page of the
    auth domain rather than on the login or OAuth pages themselves.
    """
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    host = (parts.hostname or "").lower()
    path = parts.path or "/"
    if not _is_auth_host(host):
        return False
    if path == "/login" or path.startswith("/oauth"):
        return False
    return any(path.startswith(prefix) for prefix in LOGIN_SUCCESS_PREFIXES)


def _is_session_key(value: "str") -> "bool":
    return value.startswith(SESSION_KEY_PREFIX)


class SessionManager:
    """
    SessionManager owns the credential lifecycle: capturing it
    from the login flow, validating it against the upstream API and
    clearing it on logout or confirmed expiry.

    It is the only writer of the credential. Readers go through
    get_credential(), which always reads the store.
    """

    def __init__(
        self,
        credentials: "CredentialStore",
        provider: "UsageProvider",
        events: "EventBus",
        settle_delay_seconds: "float" = _DEFAULT_SETTLE_DELAY_SECONDS,
        probe_attempts: "int" = _DEFAULT_PROBE_ATTEMPTS,
        probe_retry_delay_seconds: "float" = _DEFAULT_PROBE_RETRY_DELAY_SECONDS,
    ) -> "None":
        self._credentials = credentials
        self._provider = provider
        self._events = events
        self._settle_delay = settle_delay_seconds
        self._probe_attempts = max(1, probe_attempts)
        self._probe_retry_delay = probe_retry_delay_seconds

    def get_credential(self) -> "Credential | None":
        return self._credentials.get()

    @property
    def is_authenticated(self) -> "bool":
        return self._credentials.get() is not None

    async def capture_from_login_flow(
        self,
        navigation_events: "AsyncIterable[str]",
        browser: "BrowserSession",
    ) -> "Credential":
        """
        watches the login window's navigations until one lands on a
        post-login page with the session cookie set. Raises
        LoginCancelled if the window goes away first.
        """
        async for url in navigation_events:
            if not is_login_success_url(url):
                logger.debug("login_navigation_ignored")
                continue
            parts = urlsplit(url)

            # the upstream sets its cookies shortly after the redirect
            await asyncio.sleep(self._settle_delay)

            value = await self._read_session_cookie(browser)
            if value is None:
                logger.info("login_cookie_missing", path=parts.path)
                continue

            credential = Credential(value=value, captured_at=datetime.now(timezone.utc))
            self._credentials.set(credential)
            logger.info("login_captured")
            self._events.emit(SESSION_STATUS_CHANGED, True)
            return credential

        logger.info("login_cancelled")
        raise LoginCancelled("Login window closed")

    async def _read_session_cookie(self, browser: "BrowserSession") -> "str | None":
        try:
            cookies = await browser.get_cookies(f".{AUTH_DOMAIN}")
        except Exception:
            logger.exception("login_cookie_read_failed")
            return None

        for cookie in cookies:
            if cookie.name == SESSION_COOKIE_NAME and _is_session_key(cookie.value):
                return cookie.value
        return None

    def import_credential(self, value: "str") -> "Credential":
        """
        adopts a session key obtained outside the login window,
        e.g. copied from a browser's developer tools.
        """
        value = value.strip()
        if not _is_session_key(value):
            raise ValueError(f"session key must start with {SESSION_KEY_PREFIX!r}")

        credential = Credential(value=value, captured_at=datetime.now(timezone.utc))
        self._credentials.set(credential)
        logger.info("credential_imported")
        self._events.emit(SESSION_STATUS_CHANGED, True)
        return credential

    async def validate(self, credential: "Credential | None" = None) -> "ValidationResult":
        """
        probes the upstream API with the credential. Only an explicit
        401 counts as expiry. Network errors and other statuses are
        retried, and if every attempt is inconclusive the session is
        reported valid: a machine waking from sleep must not force a
        re-login.
        """
        credential = credential or self._credentials.get()
        if credential is None:
            return ValidationResult(valid=False, status=0)

        status = 0
        for attempt in range(1, self._probe_attempts + 1):
            try:
                status = await self._provider.probe_session(credential.value)
            except Exception:
                logger.exception("session_probe_error", attempt=attempt)
                status = 0

            if 200 <= status < 300:
                logger.debug("session_valid", status=status)
                return ValidationResult(valid=True, status=status)

            if status == 401:
                logger.info("session_expired", status=status)
                self.handle_expired()
                return ValidationResult(valid=False, status=status)

            logger.warning(
                "session_probe_inconclusive",
                attempt=attempt,
                max_attempts=self._probe_attempts,
                status=status,
            )
            if attempt < self._probe_attempts:
                await asyncio.sleep(self._probe_retry_delay)

        logger.info("session_assumed_valid", status=status)
        return ValidationResult(valid=True, status=status)

    def handle_expired(self) -> "None":
        """
        clears the credential after a confirmed unauthorized answer.
        """
        self._credentials.clear()
        self._events.emit(SESSION_STATUS_CHANGED, False)

    async def logout(self, browser: "BrowserSession | None" = None) -> "None":
        self._credentials.clear()
        if browser is not None:
            try:
                await browser.clear_cookies(f".{AUTH_DOMAIN}")
            except Exception:
                logger.exception("logout_cookie_clear_failed")
        logger.info("logged_out")
        self._events.emit(SESSION_STATUS_CHANGED, False)
