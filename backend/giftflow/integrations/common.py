from __future__ import annotations


class IntegrationDisabledError(RuntimeError):
    pass


class IntegrationMisconfiguredError(RuntimeError):
    pass


def settings_value(settings, key: str, default=None):
    """Read a key from a Flask config mapping or an attribute-style settings object."""
    if hasattr(settings, "get"):
        return settings.get(key, default)
    return getattr(settings, key, default)


def provider_name(settings, key: str, default: str) -> str:
    return (settings_value(settings, key, default) or default).strip().lower()
