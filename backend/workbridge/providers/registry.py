"""Provider registry: maps platform identifiers to provider factories.

Providers carry per-connection state (rate limiter, HTTP client), so the
registry stores factories and every run gets a fresh instance.
"""

from collections.abc import Callable

from workbridge.providers.base import ImportProvider

ProviderFactory = Callable[[], ImportProvider]

_factories: dict[str, ProviderFactory] = {}


def register_provider(platform: str, factory: ProviderFactory) -> None:
    """Register a provider factory for a platform."""
    _factories[platform] = factory


def create_provider(platform: str) -> ImportProvider:
    """Build a fresh provider. Raises ProviderNotFoundError if not registered."""
    try:
        factory = _factories[platform]
    except KeyError:
        available = ", ".join(_factories.keys()) or "(none)"
        raise ProviderNotFoundError(
            f"Provider '{platform}' not registered. Available: {available}"
        )
    return factory()


def list_platforms() -> list[str]:
    """Return the platforms with a registered provider."""
    return list(_factories.keys())


def clear_providers() -> None:
    """Clear all registered providers. Used in tests."""
    _factories.clear()


def register_default_providers() -> None:
    """Register the built-in Slack, Linear and Todoist providers."""
    from workbridge.providers.linear import LinearImportProvider
    from workbridge.providers.slack import SlackImportProvider
    from workbridge.providers.todoist import TodoistImportProvider

    register_provider("slack", SlackImportProvider)
    register_provider("linear", LinearImportProvider)
    register_provider("todoist", TodoistImportProvider)


class ProviderNotFoundError(Exception):
    pass
