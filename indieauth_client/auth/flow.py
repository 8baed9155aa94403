"""IndieAuth authorization code flow with PKCE.

This module holds the steps of a sign-in:
1. Discover the user's IndieAuth endpoints
2. Generate PKCE pair and state
3. Seal the flow state so it can leave the process (cookie, hidden field)
4. Build the login URL and send the browser there
5. Validate the callback parameters against the unsealed flow state
6. Redeem the authorization code at the token endpoint

``begin_authorization`` and ``complete_authorization`` cover steps 1-6 for
web applications that carry the sealed state in a cookie. IndieAuthFlow
runs the same steps for the command line with a localhost callback server.
"""

import hmac
import json
import logging
import webbrowser
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Callable
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx

from .callback import CallbackError, CallbackParameters, LocalhostCallbackServer
from .discovery import (
    DEFAULT_USER_AGENT,
    DiscoveryError,
    EndpointMetadata,
    EndpointNotFoundError,
    MetadataError,
    discover_endpoints,
)
from .pkce import S256, generate_pkce_pair, generate_state
from .sign import SigningKey, VerificationError, VerificationErrorKind, sign_text, verify_text
from .tokens import TokenResponseError, TokenSet

logger = logging.getLogger(__name__)


class CallbackValidationError(Exception):
    """The authorization callback does not belong to this flow."""

    pass


class StateMismatchError(CallbackValidationError):
    """The callback state differs from the state sent with the request."""

    pass


class IssuerMismatchError(CallbackValidationError):
    """The callback iss differs from the issuer in the endpoint metadata."""

    pass


class AuthorizationDeniedError(CallbackValidationError):
    """The authorization server returned an error instead of a code."""

    pass


class IndieAuthFlowError(Exception):
    """Error during the command line sign-in flow."""

    pass


def build_login_url(
    client_id: str,
    authorization_endpoint: str,
    redirect_url: str,
    state: str,
    code_challenge: str | None = None,
    me: str | None = None,
    scope: str | None = None,
) -> str:
    """Build the authorization request URL for browser redirect.

    Query parameters already present on the authorization endpoint are kept
    unless one of the parameters below replaces them.

    Args:
        client_id: The client ID (the application's URL)
        authorization_endpoint: The discovered authorization endpoint
        redirect_url: Where the authorization server sends the browser back
        state: Random state value for this request
        code_challenge: PKCE S256 code challenge, if PKCE is used
        me: The profile URL the user entered
        scope: Space-separated scopes to request

    Returns:
        Complete login URL
    """
    params: dict[str, str] = {
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": redirect_url,
        "state": state,
    }

    if code_challenge is not None:
        params["code_challenge"] = code_challenge
        params["code_challenge_method"] = S256

    if scope is not None:
        params["scope"] = scope

    if me is not None:
        params["me"] = me

    parts = urlsplit(authorization_endpoint)
    existing = [
        (k, v)
        for k, v in parse_qsl(parts.query, keep_blank_values=True)
        if k not in params
    ]
    query = urlencode(existing + list(params.items()), safe=":/")
    return urlunsplit(parts._replace(query=query))


def _callback_params(query: CallbackParameters | Mapping[str, Any]) -> CallbackParameters:
    if isinstance(query, CallbackParameters):
        return query
    return CallbackParameters.from_query(query)


def check_parameters(
    query: CallbackParameters | Mapping[str, Any],
    metadata: EndpointMetadata,
    expected_state: str,
) -> None:
    """Validate callback parameters against the flow that started the request.

    The issuer check only applies when the metadata declares a non-empty
    issuer; servers that predate the ``iss`` parameter do not send one.

    Raises:
        StateMismatchError: If the returned state is not the expected one
        IssuerMismatchError: If the returned iss differs from metadata.issuer
    """
    params = _callback_params(query)

    if params.state is None or not hmac.compare_digest(
        params.state.encode("utf-8"), expected_state.encode("utf-8")
    ):
        raise StateMismatchError("state parameter must match")

    issuer = metadata.issuer
    if issuer and params.iss != issuer:
        raise IssuerMismatchError("issuer must match")


async def redeem_code(
    query: CallbackParameters | Mapping[str, Any],
    metadata: EndpointMetadata,
    client_id: str,
    redirect_url: str,
    code_verifier: str | None = None,
    http_client: httpx.AsyncClient | None = None,
    user_agent: str = DEFAULT_USER_AGENT,
) -> Any:
    """Exchange an authorization code for tokens.

    The response body is returned as parsed, whatever the HTTP status; the
    caller decides whether it is a token set or an error.

    Args:
        query: Callback parameters holding the authorization code
        metadata: Endpoint metadata of the flow
        client_id: The client ID used in the authorization request
        redirect_url: The redirect URL used in the authorization request
        code_verifier: PKCE code verifier, if PKCE was used
        http_client: Optional HTTP client

    Returns:
        Token endpoint JSON response

    Raises:
        CallbackValidationError: If the callback has no code
        MetadataError: If the metadata has no token endpoint
        httpx.HTTPError: On transport failures
        ValueError: If the response body is not JSON
    """
    params = _callback_params(query)
    if not params.code:
        raise CallbackValidationError("Callback is missing the authorization code")
    if not metadata.token_endpoint:
        raise MetadataError(
            "Endpoint metadata has no token_endpoint, the authorization code cannot be redeemed"
        )

    form: dict[str, str] = {
        "grant_type": "authorization_code",
        "code": params.code,
        "client_id": client_id,
        "redirect_uri": redirect_url,
    }
    if code_verifier is not None:
        form["code_verifier"] = code_verifier

    http = http_client or httpx.AsyncClient(timeout=None)
    should_close = http_client is None

    logger.debug(f"Redeeming authorization code at {metadata.token_endpoint}")

    try:
        response = await http.post(
            metadata.token_endpoint,
            data=form,
            headers={"Accept": "application/json", "User-Agent": user_agent},
        )
        logger.debug(f"Token endpoint returned HTTP {response.status_code}")
        return response.json()
    finally:
        if should_close:
            await http.aclose()


@dataclass
class FlowState:
    """Values that must survive the redirect to the authorization server.

    Attributes:
        me: The profile URL the user entered
        state: The random state sent with the authorization request
        code_verifier: PKCE code verifier, None when PKCE is not used
        metadata: The endpoints discovered for ``me``
    """

    me: str
    state: str
    code_verifier: str | None
    metadata: EndpointMetadata

    def to_json(self) -> str:
        data: dict[str, Any] = {
            "me": self.me,
            "state": self.state,
            "codeVerifier": self.code_verifier,
            "metadata": self.metadata.to_dict(),
        }
        return json.dumps(data, separators=(",", ":"))

    @classmethod
    def from_json(cls, text: str) -> "FlowState":
        """Parse a serialized flow state.

        Raises:
            ValueError: If the text is not a JSON flow state
            MetadataError: If the embedded metadata is invalid
        """
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("Flow state must be a JSON object")

        me = data.get("me")
        state = data.get("state")
        code_verifier = data.get("codeVerifier")
        if not isinstance(me, str) or not isinstance(state, str):
            raise ValueError("Flow state is missing 'me' or 'state'")
        if code_verifier is not None and not isinstance(code_verifier, str):
            raise ValueError("Flow state 'codeVerifier' must be a string")

        return cls(
            me=me,
            state=state,
            code_verifier=code_verifier,
            metadata=EndpointMetadata.from_dict(data.get("metadata")),
        )


def seal_flow_state(key: SigningKey, flow_state: FlowState) -> str:
    """Sign a flow state so it can be handed to the browser."""
    return sign_text(key, flow_state.to_json())


def unseal_flow_state(key: SigningKey, sealed: str) -> FlowState:
    """Verify and parse a sealed flow state.

    Raises:
        VerificationError: If the signature is missing or wrong, or if the
            signed payload is not a flow state (kind MALFORMED_PAYLOAD)
    """
    text = verify_text(key, sealed)
    try:
        return FlowState.from_json(text)
    except (ValueError, MetadataError) as e:
        raise VerificationError(
            VerificationErrorKind.MALFORMED_PAYLOAD,
            f"Signed payload is not a flow state: {e}",
        ) from e


@dataclass
class AuthorizationRequest:
    """A started sign-in.

    Attributes:
        login_url: Where to send the browser
        sealed_state: Signed flow state to store with the browser
        flow_state: The unsealed flow state
    """

    login_url: str
    sealed_state: str
    flow_state: FlowState


async def begin_authorization(
    profile_url: str,
    client_id: str,
    redirect_url: str,
    key: SigningKey,
    scope: str | None = None,
    user_agent: str = DEFAULT_USER_AGENT,
    http_client: httpx.AsyncClient | None = None,
) -> AuthorizationRequest:
    """Discover endpoints and prepare the authorization request.

    PKCE is used unless the server publishes a list of challenge methods
    that does not include S256.

    Raises:
        EndpointNotFoundError: If no IndieAuth server was found
    """
    metadata = await discover_endpoints(profile_url, user_agent, http_client)
    if metadata is None:
        raise EndpointNotFoundError(f"Unable to find IndieAuth server for {profile_url}")

    pkce = None
    if metadata.supports_s256() or not metadata.advertises_challenge_methods():
        pkce = generate_pkce_pair()
    else:
        logger.warning(
            f"Authorization server for {profile_url} does not support S256, "
            f"continuing without PKCE"
        )

    flow_state = FlowState(
        me=profile_url,
        state=generate_state(),
        code_verifier=pkce.verifier if pkce else None,
        metadata=metadata,
    )

    login_url = build_login_url(
        client_id=client_id,
        authorization_endpoint=metadata.authorization_endpoint,
        redirect_url=redirect_url,
        state=flow_state.state,
        code_challenge=pkce.challenge if pkce else None,
        me=profile_url,
        scope=scope,
    )

    return AuthorizationRequest(
        login_url=login_url,
        sealed_state=seal_flow_state(key, flow_state),
        flow_state=flow_state,
    )


async def complete_authorization(
    key: SigningKey,
    sealed_state: str,
    query: CallbackParameters | Mapping[str, Any],
    client_id: str,
    redirect_url: str,
    http_client: httpx.AsyncClient | None = None,
    user_agent: str = DEFAULT_USER_AGENT,
) -> Any:
    """Validate the callback and redeem its code.

    Returns:
        The token endpoint JSON response, unmodified

    Error callbacks are only reported once their state and issuer match, so
    a forged redirect cannot show arbitrary error text.

    Raises:
        VerificationError: If the sealed state was tampered with
        StateMismatchError: If the callback state does not match
        IssuerMismatchError: If the callback issuer does not match
        AuthorizationDeniedError: If the callback carries an error
    """
    flow_state = unseal_flow_state(key, sealed_state)
    params = _callback_params(query)

    check_parameters(params, flow_state.metadata, flow_state.state)

    if params.error:
        message = f"Authorization failed: {params.error}"
        if params.error_description:
            message += f" - {params.error_description}"
        raise AuthorizationDeniedError(message)

    return await redeem_code(
        params,
        flow_state.metadata,
        client_id,
        redirect_url,
        code_verifier=flow_state.code_verifier,
        http_client=http_client,
        user_agent=user_agent,
    )


class IndieAuthFlow:
    """Runs a complete sign-in from the command line.

    The redirect target is a LocalhostCallbackServer; unless a client ID is
    given, the server's base URL doubles as the client ID.

    Usage:
        flow = IndieAuthFlow("https://example.com/", key)
        token_set = await flow.run()
    """

    def __init__(
        self,
        profile_url: str,
        key: SigningKey,
        client_id: str | None = None,
        scope: str | None = None,
        user_agent: str = DEFAULT_USER_AGENT,
        callback_timeout: float = 300,
        open_browser: bool = True,
        on_status: Callable[[str], None] | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.profile_url = profile_url
        self.key = key
        self.client_id = client_id
        self.scope = scope
        self.user_agent = user_agent
        self.callback_timeout = callback_timeout
        self.open_browser = open_browser
        self.on_status = on_status or (lambda msg: None)
        self.http_client = http_client

    def _emit_status(self, message: str) -> None:
        logger.info(message)
        self.on_status(message)

    async def run(self) -> TokenSet:
        """Execute the sign-in and return the redeemed token set.

        Raises:
            IndieAuthFlowError: If any step fails
        """
        http = self.http_client or httpx.AsyncClient(timeout=None)
        should_close = self.http_client is None

        try:
            async with LocalhostCallbackServer(timeout=self.callback_timeout) as server:
                client_id = self.client_id or f"{server.base_url}/"

                self._emit_status(f"Discovering IndieAuth endpoints for {self.profile_url}...")
                request = await begin_authorization(
                    self.profile_url,
                    client_id,
                    server.redirect_url,
                    self.key,
                    scope=self.scope,
                    user_agent=self.user_agent,
                    http_client=http,
                )
                metadata = request.flow_state.metadata
                self._emit_status(f"Authorization endpoint: {metadata.authorization_endpoint}")

                if not (self.open_browser and webbrowser.open(request.login_url)):
                    self._emit_status(f"Open this URL to sign in:\n{request.login_url}")
                self._emit_status(f"Waiting for callback on {server.redirect_url}")

                params = await server.wait_for_callback()

                self._emit_status("Redeeming authorization code...")
                response = await complete_authorization(
                    self.key,
                    request.sealed_state,
                    params,
                    client_id,
                    server.redirect_url,
                    http_client=http,
                    user_agent=self.user_agent,
                )

                token_set = TokenSet.from_token_response(response)
                self._emit_status(f"Signed in as {token_set.me}")
                return token_set

        except (
            DiscoveryError,
            CallbackError,
            CallbackValidationError,
            VerificationError,
            TokenResponseError,
        ) as e:
            raise IndieAuthFlowError(str(e)) from e
        finally:
            if should_close:
                await http.aclose()
