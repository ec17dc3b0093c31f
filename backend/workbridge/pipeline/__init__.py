"""Provider-agnostic import plumbing: pacing, retries, keys, run context."""

from workbridge.pipeline.context import ImportContext
from workbridge.pipeline.idempotency import generate_key, parse_key
from workbridge.pipeline.rate_limit import RateLimiter
from workbridge.pipeline.retry import DEFAULT_RETRY_POLICY, RetryPolicy, with_retry

__all__ = [
    "DEFAULT_RETRY_POLICY",
    "ImportContext",
    "RateLimiter",
    "RetryPolicy",
    "generate_key",
    "parse_key",
    "with_retry",
]
