"""Abstract import provider interface and the shared HTTP call plumbing."""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, TypeVar

import httpx

from workbridge.errors import (
    ConnectionInvalidError,
    ImportCancelledError,
    ImportPipelineError,
    ProviderAPIError,
    ProviderAuthError,
    RateLimitedError,
    UnsupportedOperationError,
)
from workbridge.importer.models import (
    ExternalAttachment,
    ExternalChannel,
    ExternalMessage,
    ExternalUser,
    Page,
)
from workbridge.models import RateLimitInfo, WorkspaceMetadata
from workbridge.pipeline.context import ImportContext
from workbridge.pipeline.rate_limit import RateLimiter
from workbridge.pipeline.retry import DEFAULT_RETRY_POLICY, RetryPolicy, with_retry
from workbridge.pipeline.utils import is_token_expired, parse_rate_limit_headers

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ImportProvider(ABC):
    """Abstract interface for import providers.

    Each provider normalizes one external platform onto ExternalUser,
    ExternalChannel and ExternalMessage. Wire-format details never leave
    the concrete provider.
    """

    container_label: str = "channels"
    item_label: str = "messages"
    reply_config_flag: str = "include_threads"
    supports_replies: bool = False
    max_concurrent_containers: int = 3
    item_batch_size: int = 50
    required_scopes: tuple[str, ...] = ()

    @property
    @abstractmethod
    def platform(self) -> str:
        """Platform identifier (e.g., 'slack')."""
        ...

    @abstractmethod
    async def validate_connection(self, ctx: ImportContext) -> None:
        """One cheap authenticated call. Raises ConnectionInvalidError."""
        ...

    @abstractmethod
    async def fetch_workspace(self, ctx: ImportContext) -> WorkspaceMetadata: ...

    @abstractmethod
    async def fetch_users(self, ctx: ImportContext) -> list[ExternalUser]:
        """All users of the workspace, aggregated across pages."""
        ...

    @abstractmethod
    async def fetch_channels(self, ctx: ImportContext) -> list[ExternalChannel]:
        """Containers, restricted to ``ctx.config.items`` when given."""
        ...

    @abstractmethod
    async def fetch_messages_page(
        self,
        ctx: ImportContext,
        channel: ExternalChannel,
        cursor: str | None = None,
    ) -> Page[ExternalMessage]:
        """One page of items for a container. No cursor means the first page."""
        ...

    async def fetch_replies(
        self,
        ctx: ImportContext,
        channel: ExternalChannel,
        parent_external_id: str,
    ) -> list[ExternalMessage]:
        """Thread replies or comments under one item."""
        raise UnsupportedOperationError(f"{self.platform} does not expose replies")

    async def download_attachment(
        self, ctx: ImportContext, attachment: ExternalAttachment
    ) -> bytes:
        raise UnsupportedOperationError(f"{self.platform} does not support attachments")

    async def aclose(self) -> None:
        """Release network resources. Safe to call more than once."""
        return None

    def missing_scopes(self, granted: str | None) -> list[str]:
        """Required scopes absent from a granted scope string (comma or space separated)."""
        if not granted or not self.required_scopes:
            return []
        have = {s.strip() for s in granted.replace(",", " ").split() if s.strip()}
        return [s for s in self.required_scopes if s not in have]


class HTTPImportProvider(ImportProvider):
    """Base for providers that speak HTTP through httpx.

    Owns the rate limiter and retry policy for one connection. ``_send``
    performs a single attempt; concrete providers wrap it in ``_retrying``
    and unwrap their own response envelope.
    """

    min_delay: float = 0.1
    max_delay: float = 30.0
    default_retry_after: float | None = None

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        rate_limiter: RateLimiter | None = None,
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(30.0))
        self.rate_limiter = rate_limiter or RateLimiter(
            min_delay=self.min_delay, max_delay=self.max_delay, sleep=sleep
        )
        self.retry_policy = retry_policy
        self._sleep = sleep

    async def aclose(self) -> None:
        if self._owns_client and not self._client.is_closed:
            await self._client.aclose()

    async def validate_connection(self, ctx: ImportContext) -> None:
        missing = self.missing_scopes(ctx.scope)
        if missing:
            raise ConnectionInvalidError(
                f"Missing required {self.platform} scopes: {', '.join(missing)}"
            )
        try:
            await self._probe(ctx)
        except ImportCancelledError:
            raise
        except ImportPipelineError as e:
            raise ConnectionInvalidError(
                f"Failed to validate {self.platform} connection: {e}"
            ) from e

    @abstractmethod
    async def _probe(self, ctx: ImportContext) -> None:
        """Cheapest authenticated call the platform offers."""
        ...

    def _parse_quota(self, headers: Mapping[str, str]) -> RateLimitInfo | None:
        return parse_rate_limit_headers(headers)

    def _raise_for_error_body(
        self, response: httpx.Response, endpoint: str, quota: RateLimitInfo | None
    ) -> None:
        """Hook for platforms that explain a failed status in the body."""
        return None

    async def _send(
        self,
        ctx: ImportContext,
        method: str,
        url: str,
        *,
        endpoint: str,
        headers: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> tuple[httpx.Response, RateLimitInfo | None]:
        """One attempt: cancellation, pacing, auth, HTTP status mapping."""
        await ctx.raise_if_cancelled()
        await self.rate_limiter.wait()

        if is_token_expired(ctx.expires_at):
            raise ProviderAuthError("Token expired", endpoint=endpoint)

        request_headers = {"Authorization": f"Bearer {ctx.access_token}"}
        request_headers.update(headers or {})
        response = await self._client.request(method, url, headers=request_headers, **kwargs)
        quota = self._parse_quota(response.headers)
        status = response.status_code

        if response.is_error:
            self._raise_for_error_body(response, endpoint, quota)
        if status == 429:
            retry_after = (
                quota.retry_after if quota and quota.retry_after else self.default_retry_after
            )
            self.rate_limiter.record_rate_limit(retry_after)
            logger.info("%s rate limited on %s, retry after %ss", self.platform, endpoint, retry_after)
            raise RateLimitedError(
                f"Rate limited: {response.text}",
                retry_after=retry_after,
                status=status,
                endpoint=endpoint,
            )
        if status >= 500:
            self.rate_limiter.record_server_error()
            raise ProviderAPIError(
                f"Server error {status}: {response.text}", status=status, endpoint=endpoint
            )
        if status in (401, 403):
            raise ProviderAuthError(
                f"HTTP {status}: {response.text}", status=status, endpoint=endpoint
            )
        if response.is_error:
            raise ProviderAPIError(
                f"HTTP {status}: {response.text}", status=status, endpoint=endpoint
            )
        return response, quota

    async def _retrying(
        self, ctx: ImportContext, endpoint: str, attempt: Callable[[], Awaitable[T]]
    ) -> T:
        """Run one logical call under the retry policy, logging each retry."""
        max_attempts = self.retry_policy.max_attempts

        async def on_retry(attempt_number: int, error: BaseException, delay: float) -> None:
            await ctx.log(
                "warning",
                f"{self.platform} API retry {attempt_number}/{max_attempts}",
                {"endpoint": endpoint, "error": str(error), "delay": delay},
            )

        return await with_retry(attempt, self.retry_policy, on_retry, sleep=self._sleep)
