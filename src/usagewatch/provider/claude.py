import httpx
import structlog

from usagewatch.errors import AuthExpiredError, TransientFetchError
from usagewatch.provider.base import UsageDocuments

logger = structlog.get_logger()

CLAUDE_BASE_URL = "https://claude.ai"
BOOTSTRAP_PATH = "/api/bootstrap"
ORGANIZATIONS_PATH = "/api/organizations"
AUTH_SESSION_PATH = "/api/auth/session"

SESSION_COOKIE_NAME = "sessionKey"

# the web API sits behind a bot filter that rejects unknown agents
_USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"


def _is_unauthorized(status: "int") -> "bool":
    return status == 401


class ClaudeWebProvider:
    """
    ClaudeWebProvider implements the UsageProvider protocol for
    the claude.ai web API. Every request is authenticated with the
    session key sent as a cookie; the key is never logged.
    """

    def __init__(
        self,
        base_url: "str" = CLAUDE_BASE_URL,
        timeout: "float" = 10.0,
    ) -> "None":
        self._base_url = base_url.rstrip("/")
        self._client: "httpx.AsyncClient" = httpx.AsyncClient(
            timeout=timeout,
            headers={
                "User-Agent": _USER_AGENT,
                "Accept": "application/json",
                "Content-Type": "application/json",
            },
        )

    @property
    def name(self) -> "str":
        return "claude"

    async def close(self) -> "None":
        """
        closes the underlying HTTP client.
        """
        await self._client.aclose()

    async def _get(self, path: "str", session_key: "str") -> "httpx.Response":
        url = f"{self._base_url}{path}"
        logger.debug("claude_request", url=url)
        try:
            return await self._client.get(
                url,
                headers={"Cookie": f"{SESSION_COOKIE_NAME}={session_key}"},
            )
        except httpx.HTTPError as e:
            raise TransientFetchError(f"request to {path} failed: {e!r}") from e

    async def fetch_usage_documents(self, session_key: "str") -> "UsageDocuments":
        """
        fetches the bootstrap document, resolves the organization
        from it and then fetches that organization's rate-limit
        document. A missing rate-limit document is not an error,
        the parser falls back to other signals.
        """
        resp = await self._get(BOOTSTRAP_PATH, session_key)
        if _is_unauthorized(resp.status_code):
            raise AuthExpiredError(status=resp.status_code)
        if not resp.is_success:
            raise TransientFetchError(
                f"Bootstrap API failed: {resp.status_code}", status=resp.status_code
            )

        try:
            bootstrap = resp.json()
        except ValueError as e:
            raise TransientFetchError("Bootstrap API returned invalid JSON") from e
        if not isinstance(bootstrap, dict):
            raise TransientFetchError("Bootstrap API returned unexpected document")

        org_id = _organization_id(bootstrap)
        if not org_id:
            raise TransientFetchError("Could not find organization ID")

        usage_resp = await self._get(f"{ORGANIZATIONS_PATH}/{org_id}/usage", session_key)
        if _is_unauthorized(usage_resp.status_code):
            raise AuthExpiredError(status=usage_resp.status_code)

        rate_limits = None
        if usage_resp.is_success:
            try:
                rate_limits = usage_resp.json()
            except ValueError:
                logger.warning("claude_usage_invalid_json", org_id=org_id)
        else:
            logger.debug(
                "claude_usage_unavailable",
                org_id=org_id,
                status=usage_resp.status_code,
            )

        if rate_limits is not None and not isinstance(rate_limits, dict):
            rate_limits = None

        return UsageDocuments(bootstrap=bootstrap, rate_limits=rate_limits)

    async def probe_session(self, session_key: "str") -> "int":
        """
        issues one authenticated probe and returns its HTTP status,
        or 0 when no response was received at all.
        """
        try:
            resp = await self._get(AUTH_SESSION_PATH, session_key)
        except TransientFetchError as e:
            logger.debug("claude_probe_failed", error=str(e))
            return 0
        return resp.status_code


def _organization_id(bootstrap: "dict") -> "str | None":
    account = bootstrap.get("account")
    if not isinstance(account, dict):
        return None
    memberships = account.get("memberships")
    if not isinstance(memberships, list) or not memberships:
        return None
    membership = memberships[0]
    if not isinstance(membership, dict):
        return None
    org = membership.get("organization")
    if not isinstance(org, dict):
        return None
    org_id = org.get("uuid")
    return str(org_id) if org_id else None
