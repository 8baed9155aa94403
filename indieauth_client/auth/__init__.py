"""IndieAuth client protocol support.

This package implements the client side of IndieAuth: discovering a user's
authorization and token endpoints from their profile URL, PKCE, stateless
signed tokens for CSRF protection and flow state, callback validation and
authorization code redemption.

Main Components:
    discover_endpoints: Profile URL to EndpointMetadata
    begin_authorization / complete_authorization: Web sign-in steps
    IndieAuthFlow: Command line sign-in with a localhost callback
    sign_text / verify_text: HMAC-signed tokens

Quick Start:
    from indieauth_client.auth import (
        begin_authorization, complete_authorization, import_key,
    )

    key = import_key(secret)

    # Form submission: send the browser to request.login_url and keep
    # request.sealed_state in a cookie
    request = await begin_authorization(me, client_id, redirect_url, key)

    # Callback: query is the callback's query parameters
    tokens = await complete_authorization(
        key, sealed_state, query, client_id, redirect_url
    )
"""

from .callback import (
    CallbackError,
    CallbackParameters,
    CallbackTimeoutError,
    LocalhostCallbackServer,
    parse_callback_url,
)
from .discovery import (
    DEFAULT_USER_AGENT,
    DiscoveryError,
    EndpointMetadata,
    EndpointNotFoundError,
    MetadataError,
    discover_endpoints,
    get_header_links,
)
from .flow import (
    AuthorizationDeniedError,
    AuthorizationRequest,
    CallbackValidationError,
    FlowState,
    IndieAuthFlow,
    IndieAuthFlowError,
    IssuerMismatchError,
    StateMismatchError,
    begin_authorization,
    build_login_url,
    check_parameters,
    complete_authorization,
    redeem_code,
    seal_flow_state,
    unseal_flow_state,
)
from .links import find_html_link, parse_link_header, scan_html_links
from .pkce import (
    PKCEPair,
    generate_code_challenge,
    generate_code_verifier,
    generate_pkce_pair,
    generate_state,
    supports_s256,
)
from .sign import (
    MissingSeparatorError,
    SignatureMismatchError,
    SigningKey,
    VerificationError,
    VerificationErrorKind,
    VerificationResult,
    check_text,
    import_key,
    make_csrf_token,
    sign_text,
    verify_csrf_token,
    verify_text,
)
from .tokens import TokenResponseError, TokenSet

__all__ = [
    # Discovery
    "discover_endpoints",
    "get_header_links",
    "EndpointMetadata",
    "DiscoveryError",
    "MetadataError",
    "EndpointNotFoundError",
    "DEFAULT_USER_AGENT",
    # Links
    "parse_link_header",
    "find_html_link",
    "scan_html_links",
    # PKCE
    "generate_code_verifier",
    "generate_code_challenge",
    "generate_pkce_pair",
    "generate_state",
    "supports_s256",
    "PKCEPair",
    # Signed tokens
    "import_key",
    "sign_text",
    "verify_text",
    "check_text",
    "make_csrf_token",
    "verify_csrf_token",
    "SigningKey",
    "VerificationResult",
    "VerificationError",
    "VerificationErrorKind",
    "MissingSeparatorError",
    "SignatureMismatchError",
    # Flow
    "build_login_url",
    "check_parameters",
    "redeem_code",
    "begin_authorization",
    "complete_authorization",
    "seal_flow_state",
    "unseal_flow_state",
    "FlowState",
    "AuthorizationRequest",
    "IndieAuthFlow",
    "IndieAuthFlowError",
    "CallbackValidationError",
    "StateMismatchError",
    "IssuerMismatchError",
    "AuthorizationDeniedError",
    # Callback
    "CallbackParameters",
    "parse_callback_url",
    "LocalhostCallbackServer",
    "CallbackError",
    "CallbackTimeoutError",
    # Tokens
    "TokenSet",
    "TokenResponseError",
]
