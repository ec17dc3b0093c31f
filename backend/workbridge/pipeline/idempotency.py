"""Deterministic idempotency keys: ``platform:workspaceId:kind:externalId``.

The key is a lookup/audit handle. Deduplication itself is the store's
"does this external id already exist in the workspace" check.
"""

from dataclasses import dataclass

from workbridge.models import ENTITY_KINDS, PLATFORMS


@dataclass(frozen=True)
class IdempotencyKey:
    platform: str
    workspace_id: str
    kind: str
    external_id: str


def generate_key(platform: str, workspace_id: str, external_id: str, kind: str) -> str:
    """Build the key for one logical external entity. Pure function."""
    return f"{platform}:{workspace_id}:{kind}:{external_id}"


def parse_key(key: str) -> IdempotencyKey | None:
    """Split a key back into its fields.

    Returns None for malformed input: wrong segment count, unknown platform,
    or unknown entity kind.
    """
    parts = key.split(":")
    if len(parts) != 4:
        return None

    platform, workspace_id, kind, external_id = parts
    if platform not in PLATFORMS or kind not in ENTITY_KINDS:
        return None

    return IdempotencyKey(
        platform=platform,
        workspace_id=workspace_id,
        kind=kind,
        external_id=external_id,
    )
