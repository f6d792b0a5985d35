"""A federated chat provider with groups, channels, messages and signed requests."""

__version__ = "0.1.0"

__all__ = [
    "api_client",
    "app",
    "auth_session",
    "device_keys",
    "discovery",
    "groups",
    "messages",
    "models",
    "problem",
    "signature",
    "store",
]