from dataclasses import dataclass
from typing import Any, Protocol


@dataclass(frozen=True, slots=True)
class UsageDocuments:
    """
    UsageDocuments bundles the raw upstream documents one fetch
    cycle needs: the bootstrap document (organization and tier
    context) and, when available, the rate-limit document.
    """

    bootstrap: "dict[str, Any]"
    rate_limits: "dict[str, Any] | None" = None


class UsageProvider(Protocol):
    """
    UsageProvider stands as the protocol the poller and the
    session manager use to reach the upstream API.

    Implementations raise AuthExpiredError on an explicit
    unauthorized answer and TransientFetchError on anything
    else that prevents a fetch.
    """

    @property
    def name(self) -> "str": ...

    async def fetch_usage_documents(self, session_key: "str") -> "UsageDocuments": ...

    async def probe_session(self, session_key: "str") -> "int": ...

    async def close(self) -> "None": ...
