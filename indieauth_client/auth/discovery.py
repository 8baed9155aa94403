"""IndieAuth endpoint discovery.

Resolves a user's profile URL to the authorization and token endpoints of
their IndieAuth server. Discovery starts with a HEAD request to the profile
URL and then tries, in order:
1. The ``indieauth-metadata`` Link relation (server metadata JSON document)
2. Legacy ``authorization_endpoint``/``token_endpoint`` Link relations
3. ``<link>`` tags in the profile page HTML (only when no Link header exists)

The first strategy that yields usable metadata wins. When the profile
announces a metadata document, that document alone decides the outcome.
Only the authorization endpoint is required; a profile without a token
endpoint can still be used to sign in. A non-success HTTP
status at any step means "nothing found" rather than an error; transport
errors from httpx propagate to the caller.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import httpx

from .links import HtmlLinkScanner, parse_link_header
from .pkce import supports_s256

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "PythonIndieAuthClient"

METADATA_REL = "indieauth-metadata"
AUTHORIZATION_ENDPOINT_REL = "authorization_endpoint"
TOKEN_ENDPOINT_REL = "token_endpoint"

# Relations looked for in profile page HTML; reading stops at the
# first authorization_endpoint link
HTML_ENDPOINT_RELS = (AUTHORIZATION_ENDPOINT_REL, TOKEN_ENDPOINT_REL)


class DiscoveryError(Exception):
    """Error during IndieAuth endpoint discovery."""

    pass


class MetadataError(DiscoveryError):
    """Endpoint metadata is missing a required field or has the wrong shape."""

    pass


class EndpointNotFoundError(DiscoveryError):
    """No IndieAuth server could be found for a profile URL."""

    pass


@dataclass(frozen=True)
class EndpointMetadata:
    """IndieAuth server metadata.

    Either the JSON document published at the ``indieauth-metadata`` URL or
    the endpoints announced directly by the profile page. Only the
    authorization endpoint is required; without a token endpoint the
    authorization code cannot be redeemed. When ``issuer`` is absent or
    empty the callback ``iss`` parameter is not checked.
    """

    authorization_endpoint: str
    token_endpoint: str | None = None
    issuer: str | None = None
    code_challenge_methods_supported: list[str] | None = None
    scopes_supported: list[str] | None = None
    introspection_endpoint: str | None = None
    revocation_endpoint: str | None = None
    userinfo_endpoint: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    _KNOWN_FIELDS = (
        "authorization_endpoint",
        "token_endpoint",
        "issuer",
        "code_challenge_methods_supported",
        "scopes_supported",
        "introspection_endpoint",
        "revocation_endpoint",
        "userinfo_endpoint",
    )

    def supports_s256(self) -> bool:
        """Check if this server advertises PKCE with S256."""
        return supports_s256(self.code_challenge_methods_supported)

    def advertises_challenge_methods(self) -> bool:
        """Check if this server published a code_challenge_methods_supported list."""
        return self.code_challenge_methods_supported is not None

    @classmethod
    def from_dict(cls, data: Any) -> "EndpointMetadata":
        """Create from a metadata JSON document or a discovered link mapping.

        Raises:
            MetadataError: If the authorization endpoint is missing or a
                field has the wrong type
        """
        if not isinstance(data, dict):
            raise MetadataError(
                f"Endpoint metadata must be a JSON object, got {type(data).__name__}"
            )

        authorization_endpoint = data.get(AUTHORIZATION_ENDPOINT_REL)
        if not isinstance(authorization_endpoint, str) or not authorization_endpoint:
            raise MetadataError(
                f"Endpoint metadata missing required field: {AUTHORIZATION_ENDPOINT_REL}"
            )

        token_endpoint = data.get(TOKEN_ENDPOINT_REL)
        if token_endpoint is not None and not isinstance(token_endpoint, str):
            raise MetadataError("Endpoint metadata token_endpoint must be a string")

        issuer = data.get("issuer")
        if issuer is not None and not isinstance(issuer, str):
            raise MetadataError("Endpoint metadata issuer must be a string")

        methods = data.get("code_challenge_methods_supported")
        if methods is not None and not isinstance(methods, list):
            raise MetadataError(
                "Endpoint metadata code_challenge_methods_supported must be a list"
            )

        return cls(
            authorization_endpoint=authorization_endpoint,
            token_endpoint=token_endpoint or None,
            issuer=issuer,
            code_challenge_methods_supported=methods,
            scopes_supported=data.get("scopes_supported"),
            introspection_endpoint=data.get("introspection_endpoint"),
            revocation_endpoint=data.get("revocation_endpoint"),
            userinfo_endpoint=data.get("userinfo_endpoint"),
            extra={k: v for k, v in data.items() if k not in cls._KNOWN_FIELDS},
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a metadata dictionary, omitting unset optional fields."""
        data: dict[str, Any] = dict(self.extra)
        data["authorization_endpoint"] = self.authorization_endpoint
        for name in self._KNOWN_FIELDS[1:]:
            value = getattr(self, name)
            if value is not None:
                data[name] = value
        return data


@dataclass
class _DiscoveryContext:
    """Everything a discovery strategy may look at."""

    profile_url: str
    final_url: str
    user_agent: str
    client: httpx.AsyncClient
    links: dict[str, str] | None  # None when the response had no Link header


Strategy = Callable[[_DiscoveryContext], Awaitable[EndpointMetadata | None]]


def _to_metadata(data: Any, source: str) -> EndpointMetadata | None:
    """Validate discovered data, treating unusable data as nothing found."""
    try:
        return EndpointMetadata.from_dict(data)
    except MetadataError as e:
        logger.warning(f"Ignoring endpoint metadata from {source}: {e}")
        return None


async def fetch_metadata_document(
    url: str,
    user_agent: str = DEFAULT_USER_AGENT,
    http_client: httpx.AsyncClient | None = None,
) -> Any | None:
    """Fetch an IndieAuth server metadata document.

    Returns:
        The parsed JSON body, or None for a non-success response
    """
    client = http_client or httpx.AsyncClient(timeout=None)
    should_close = http_client is None

    logger.debug(f"Fetching IndieAuth metadata from {url}")

    try:
        response = await client.get(
            url,
            headers={"Accept": "application/json", "User-Agent": user_agent},
            follow_redirects=True,
        )
        if not response.is_success:
            logger.debug(f"Metadata request to {url} returned HTTP {response.status_code}")
            return None
        return response.json()
    finally:
        if should_close:
            await client.aclose()


async def _from_metadata_link(ctx: _DiscoveryContext) -> EndpointMetadata | None:
    if not ctx.links or METADATA_REL not in ctx.links:
        return None

    metadata_url = ctx.links[METADATA_REL]
    data = await fetch_metadata_document(metadata_url, ctx.user_agent, ctx.client)
    if data is None:
        return None
    return _to_metadata(data, metadata_url)


async def _from_header_links(ctx: _DiscoveryContext) -> EndpointMetadata | None:
    # An announced metadata document is authoritative, even when it failed
    if not ctx.links or METADATA_REL in ctx.links:
        return None
    logger.debug(f"Using legacy Link header endpoints for {ctx.profile_url}")
    return _to_metadata(ctx.links, f"Link header of {ctx.final_url}")


async def _from_html_links(ctx: _DiscoveryContext) -> EndpointMetadata | None:
    if ctx.links is not None:
        return None

    logger.debug(f"No Link header, scanning HTML of {ctx.profile_url}")

    async with ctx.client.stream(
        "GET",
        ctx.profile_url,
        headers={"Accept": "text/html", "User-Agent": ctx.user_agent},
        follow_redirects=True,
    ) as response:
        if not response.is_success:
            logger.debug(f"HTML request returned HTTP {response.status_code}")
            return None

        scanner = HtmlLinkScanner(
            HTML_ENDPOINT_RELS,
            base_url=str(response.url),
            until=(AUTHORIZATION_ENDPOINT_REL,),
        )
        async for chunk in response.aiter_text():
            scanner.feed(chunk)
            if scanner.done:
                break
        scanner.close()

    if not scanner.links:
        return None
    return _to_metadata(scanner.links, f"HTML of {ctx.profile_url}")


# Ordered, first non-None result wins
DISCOVERY_STRATEGIES: tuple[Strategy, ...] = (
    _from_metadata_link,
    _from_header_links,
    _from_html_links,
)


async def get_header_links(
    url: str,
    user_agent: str = DEFAULT_USER_AGENT,
    http_client: httpx.AsyncClient | None = None,
) -> dict[str, str] | None:
    """Fetch the Link header relations of a URL with a HEAD request.

    Returns:
        Mapping of relation name to URI, or None if the response was not
        successful or carried no Link header
    """
    client = http_client or httpx.AsyncClient(timeout=None)
    should_close = http_client is None

    try:
        response = await client.head(
            url, headers={"User-Agent": user_agent}, follow_redirects=True
        )
        if not response.is_success:
            return None
        link = response.headers.get("link")
        if not link:
            return None
        return parse_link_header(link, base_url=str(response.url))
    finally:
        if should_close:
            await client.aclose()


async def discover_endpoints(
    profile_url: str,
    user_agent: str = DEFAULT_USER_AGENT,
    http_client: httpx.AsyncClient | None = None,
) -> EndpointMetadata | None:
    """Discover the IndieAuth endpoints for a profile URL.

    This is the main entry point for discovery. No timeout is applied unless
    the caller passes an http_client configured with one.

    Args:
        profile_url: The user's profile URL ("me")
        user_agent: User-Agent header sent with every request
        http_client: Optional HTTP client to use

    Returns:
        EndpointMetadata, or None if no IndieAuth server was found

    Raises:
        httpx.HTTPError: On transport failures
        ValueError: If a metadata document is not valid JSON
    """
    client = http_client or httpx.AsyncClient(timeout=None)
    should_close = http_client is None

    logger.debug(f"Discovering IndieAuth endpoints for {profile_url}")

    try:
        response = await client.head(
            profile_url, headers={"User-Agent": user_agent}, follow_redirects=True
        )
        if not response.is_success:
            logger.debug(f"HEAD {profile_url} returned HTTP {response.status_code}")
            return None

        final_url = str(response.url)
        link = response.headers.get("link")
        ctx = _DiscoveryContext(
            profile_url=profile_url,
            final_url=final_url,
            user_agent=user_agent,
            client=client,
            links=parse_link_header(link, base_url=final_url) if link else None,
        )

        for strategy in DISCOVERY_STRATEGIES:
            metadata = await strategy(ctx)
            if metadata is not None:
                logger.debug(
                    f"Discovered endpoints for {profile_url} via {strategy.__name__}"
                )
                return metadata

        logger.debug(f"No IndieAuth endpoints found for {profile_url}")
        return None

    finally:
        if should_close:
            await client.aclose()
