"""The provider discovery document served at /.well-known/ofscp-provider."""

from __future__ import annotations

from forumall.models import (
    AuthenticationEndpoints,
    Capabilities,
    Discoverability,
    DiscoveryDocument,
    Endpoints,
    MessageType,
    ProviderInfo,
    SoftwareInfo,
)

PROTOCOL_VERSION = "0.1.0"
SOFTWARE_NAME = "OFSCP Dioxus Provider"
SOFTWARE_VERSION = "0.1.0"
CONTACT = "admin@localhost"


def _strip_scheme(base_url: str) -> str:
    for scheme in ("http://", "https://"):
        if base_url.startswith(scheme):
            return base_url[len(scheme):]
    return base_url


def provider_discovery(server_url: str) -> DiscoveryDocument:
    """Describe this provider, its capabilities and endpoints under server_url."""
    base_url = server_url.rstrip("/")
    return DiscoveryDocument(
        provider=ProviderInfo(
            domain=_strip_scheme(base_url),
            protocol_version=PROTOCOL_VERSION,
            software=SoftwareInfo(name=SOFTWARE_NAME, version=SOFTWARE_VERSION),
            contact=CONTACT,
            authentication=AuthenticationEndpoints(
                issuer=f"{base_url}/api/auth",
                authorization_endpoint=f"{base_url}/api/auth/authorize",
                token_endpoint=f"{base_url}/api/auth/token",
                userinfo_endpoint=f"{base_url}/api/auth/userinfo",
                jwks_uri=f"{base_url}/.well-known/jwks.json",
            ),
            public_keys=None,
        ),
        capabilities=Capabilities(
            message_types=[MessageType.MESSAGE, MessageType.MEMO, MessageType.ARTICLE],
            discoverability=[Discoverability.PUBLIC],
            metadata_schemas=[],
        ),
        endpoints=Endpoints(
            identity=f"{base_url}/api/identity",
            groups=f"{base_url}/api/groups",
            notifications=f"{base_url}/api/notifications",
            tiers=f"{base_url}/api/tiers",
        ),
    )