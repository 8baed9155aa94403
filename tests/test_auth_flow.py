"""Tests for the IndieAuth authorization flow."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from conftest import AUTH_ENDPOINT, ISSUER, PROFILE_URL, TOKEN_ENDPOINT, RequestLog, make_client
from indieauth_client.auth.callback import CallbackParameters
from indieauth_client.auth.discovery import EndpointMetadata, EndpointNotFoundError, MetadataError
from indieauth_client.auth.flow import (
    AuthorizationDeniedError,
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
from indieauth_client.auth.pkce import generate_code_challenge
from indieauth_client.auth.sign import (
    SignatureMismatchError,
    VerificationError,
    VerificationErrorKind,
    import_key,
    make_csrf_token,
    sign_text,
    verify_csrf_token,
)
from indieauth_client.auth.tokens import TokenSet


CLIENT_ID = "https://app.example/"
REDIRECT_URL = "https://app.example/cb"


def mock_token_endpoint(body):
    """Create a mock http client whose POST returns ``body`` as JSON."""
    mock_response = MagicMock()
    mock_response.status_code = 200
    mock_response.json.return_value = body

    mock_http = AsyncMock()
    mock_http.post = AsyncMock(return_value=mock_response)
    mock_http.aclose = AsyncMock()
    return mock_http


class TestBuildLoginUrl:
    """Tests for build_login_url function."""

    def test_builds_url_with_pkce(self) -> None:
        """Test the parameter order and encoding of a PKCE login URL."""
        url = build_login_url(
            client_id=CLIENT_ID,
            authorization_endpoint=AUTH_ENDPOINT,
            redirect_url=REDIRECT_URL,
            state="abc",
            code_challenge="xyz",
        )

        assert url.startswith(f"{AUTH_ENDPOINT}?")
        assert (
            "response_type=code&client_id=https://app.example/&redirect_uri="
            "https://app.example/cb&state=abc&code_challenge=xyz&code_challenge_method=S256"
        ) in url

    def test_without_code_challenge(self) -> None:
        url = build_login_url(CLIENT_ID, AUTH_ENDPOINT, REDIRECT_URL, "abc")
        assert "code_challenge" not in url
        assert url.endswith("state=abc")

    def test_includes_scope_and_me(self) -> None:
        url = build_login_url(
            CLIENT_ID, AUTH_ENDPOINT, REDIRECT_URL, "abc", me=PROFILE_URL, scope="profile email"
        )
        query = parse_qs(urlsplit(url).query)
        assert query["scope"] == ["profile email"]
        assert query["me"] == [PROFILE_URL]

    def test_escapes_reserved_characters(self) -> None:
        url = build_login_url(CLIENT_ID, AUTH_ENDPOINT, "https://app.example/cb?x=1&y=2", "a&b")
        query = parse_qs(urlsplit(url).query)
        assert query["redirect_uri"] == ["https://app.example/cb?x=1&y=2"]
        assert query["state"] == ["a&b"]

    def test_keeps_existing_query(self) -> None:
        """Test that endpoint query parameters survive unless replaced."""
        url = build_login_url(
            CLIENT_ID, f"{AUTH_ENDPOINT}?tenant=alice&state=old", REDIRECT_URL, "abc"
        )
        query = parse_qs(urlsplit(url).query)
        assert query["tenant"] == ["alice"]
        assert query["state"] == ["abc"]
        assert urlsplit(url).path == "/auth"


class TestCheckParameters:
    """Tests for check_parameters function."""

    def test_matching_state_and_issuer(self, metadata: EndpointMetadata) -> None:
        check_parameters({"code": "c", "state": "abc", "iss": ISSUER}, metadata, "abc")

    def test_state_mismatch(self, metadata: EndpointMetadata) -> None:
        with pytest.raises(StateMismatchError) as exc_info:
            check_parameters({"code": "c", "state": "abd", "iss": ISSUER}, metadata, "abc")
        assert str(exc_info.value) == "state parameter must match"

    def test_missing_state(self, metadata: EndpointMetadata) -> None:
        with pytest.raises(StateMismatchError):
            check_parameters({"code": "c", "iss": ISSUER}, metadata, "abc")

    def test_issuer_mismatch(self, metadata: EndpointMetadata) -> None:
        with pytest.raises(IssuerMismatchError) as exc_info:
            check_parameters(
                {"code": "c", "state": "abc", "iss": "https://evil.example/"}, metadata, "abc"
            )
        assert str(exc_info.value) == "issuer must match"

    def test_missing_issuer(self, metadata: EndpointMetadata) -> None:
        with pytest.raises(IssuerMismatchError):
            check_parameters({"code": "c", "state": "abc"}, metadata, "abc")

    def test_issuer_not_checked_without_metadata_issuer(
        self, legacy_metadata: EndpointMetadata
    ) -> None:
        check_parameters({"code": "c", "state": "abc"}, legacy_metadata, "abc")
        check_parameters({"state": "abc", "iss": "https://any.example/"}, legacy_metadata, "abc")

    def test_accepts_callback_parameters(self, metadata: EndpointMetadata) -> None:
        check_parameters(CallbackParameters(state="abc", iss=ISSUER), metadata, "abc")

    def test_errors_share_base_class(self, metadata: EndpointMetadata) -> None:
        with pytest.raises(CallbackValidationError):
            check_parameters({"state": "x"}, metadata, "abc")


class TestRedeemCode:
    """Tests for redeem_code function."""

    @pytest.mark.asyncio
    async def test_posts_form_with_verifier(self, metadata: EndpointMetadata) -> None:
        """Test the token request form and headers."""
        mock_http = mock_token_endpoint({"me": PROFILE_URL})

        result = await redeem_code(
            {"code": "the-code", "state": "s"},
            metadata,
            CLIENT_ID,
            REDIRECT_URL,
            code_verifier="verifier",
            http_client=mock_http,
        )

        assert result == {"me": PROFILE_URL}
        args, kwargs = mock_http.post.call_args
        assert args[0] == TOKEN_ENDPOINT
        assert kwargs["data"] == {
            "grant_type": "authorization_code",
            "code": "the-code",
            "client_id": CLIENT_ID,
            "redirect_uri": REDIRECT_URL,
            "code_verifier": "verifier",
        }
        assert kwargs["headers"]["Accept"] == "application/json"
        assert kwargs["headers"]["User-Agent"] == "PythonIndieAuthClient"
        mock_http.aclose.assert_not_called()

    @pytest.mark.asyncio
    async def test_omits_verifier_without_pkce(self, metadata: EndpointMetadata) -> None:
        mock_http = mock_token_endpoint({"me": PROFILE_URL})

        await redeem_code({"code": "c"}, metadata, CLIENT_ID, REDIRECT_URL, http_client=mock_http)

        assert "code_verifier" not in mock_http.post.call_args.kwargs["data"]

    @pytest.mark.asyncio
    async def test_returns_error_body_unmodified(self, metadata: EndpointMetadata) -> None:
        """Test that an error response is returned, not raised."""
        body = {"error": "invalid_grant", "error_description": "Code expired"}
        mock_http = mock_token_endpoint(body)
        mock_http.post.return_value.status_code = 400

        result = await redeem_code(
            {"code": "c"}, metadata, CLIENT_ID, REDIRECT_URL, http_client=mock_http
        )

        assert result == body

    @pytest.mark.asyncio
    async def test_real_request_is_form_encoded(self, metadata: EndpointMetadata) -> None:
        log = RequestLog(lambda request: httpx.Response(200, json={"me": PROFILE_URL}))

        async with make_client(log) as client:
            await redeem_code(
                {"code": "c"}, metadata, CLIENT_ID, REDIRECT_URL, "v", http_client=client
            )

        request = log.requests[0]
        assert request.method == "POST"
        assert request.headers["Content-Type"] == "application/x-www-form-urlencoded"
        assert parse_qs(request.content.decode()) == {
            "grant_type": ["authorization_code"],
            "code": ["c"],
            "client_id": [CLIENT_ID],
            "redirect_uri": [REDIRECT_URL],
            "code_verifier": ["v"],
        }

    @pytest.mark.asyncio
    async def test_missing_code(self, metadata: EndpointMetadata) -> None:
        mock_http = mock_token_endpoint({})

        with pytest.raises(CallbackValidationError):
            await redeem_code({"state": "s"}, metadata, CLIENT_ID, REDIRECT_URL, http_client=mock_http)

        mock_http.post.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_token_endpoint(self) -> None:
        """Test a server without a token endpoint cannot redeem the code."""
        metadata = EndpointMetadata(authorization_endpoint=AUTH_ENDPOINT)
        mock_http = mock_token_endpoint({})

        with pytest.raises(MetadataError, match="token_endpoint"):
            await redeem_code({"code": "c"}, metadata, CLIENT_ID, REDIRECT_URL, http_client=mock_http)

        mock_http.post.assert_not_called()


class TestFlowState:
    """Tests for sealing and unsealing the flow state."""

    def test_json_keys(self, metadata: EndpointMetadata) -> None:
        flow_state = FlowState(me=PROFILE_URL, state="abc", code_verifier="v", metadata=metadata)
        data = json.loads(flow_state.to_json())

        assert data == {
            "me": PROFILE_URL,
            "state": "abc",
            "codeVerifier": "v",
            "metadata": metadata.to_dict(),
        }

    def test_seal_and_unseal(self, signing_key, metadata: EndpointMetadata) -> None:
        flow_state = FlowState(me=PROFILE_URL, state="abc", code_verifier=None, metadata=metadata)
        assert unseal_flow_state(signing_key, seal_flow_state(signing_key, flow_state)) == flow_state

    def test_tampered_seal(self, signing_key, metadata: EndpointMetadata) -> None:
        flow_state = FlowState(me=PROFILE_URL, state="abc", code_verifier="v", metadata=metadata)
        sealed = seal_flow_state(signing_key, flow_state).replace('"abc"', '"abd"')

        with pytest.raises(SignatureMismatchError):
            unseal_flow_state(signing_key, sealed)

    @pytest.mark.parametrize(
        "payload",
        [
            "not json",
            "[]",
            '{"me": "https://example.com/"}',
            '{"me": "https://example.com/", "state": "s", "metadata": {}}',
        ],
    )
    def test_malformed_payload(self, signing_key, payload: str) -> None:
        with pytest.raises(VerificationError) as exc_info:
            unseal_flow_state(signing_key, sign_text(signing_key, payload))
        assert exc_info.value.kind is VerificationErrorKind.MALFORMED_PAYLOAD


class TestBeginAuthorization:
    """Tests for begin_authorization function."""

    @pytest.mark.asyncio
    async def test_builds_pkce_request(self, signing_key, metadata: EndpointMetadata) -> None:
        with patch(
            "indieauth_client.auth.flow.discover_endpoints", AsyncMock(return_value=metadata)
        ):
            request = await begin_authorization(
                PROFILE_URL, CLIENT_ID, REDIRECT_URL, signing_key, scope="profile"
            )

        flow_state = request.flow_state
        query = parse_qs(urlsplit(request.login_url).query)

        assert request.login_url.startswith(AUTH_ENDPOINT)
        assert query["client_id"] == [CLIENT_ID]
        assert query["redirect_uri"] == [REDIRECT_URL]
        assert query["state"] == [flow_state.state]
        assert query["me"] == [PROFILE_URL]
        assert query["scope"] == ["profile"]
        assert query["code_challenge"] == [generate_code_challenge(flow_state.code_verifier)]
        assert query["code_challenge_method"] == ["S256"]
        assert len(flow_state.state) == 32
        assert len(flow_state.code_verifier) == 64
        assert flow_state.metadata == metadata
        assert unseal_flow_state(signing_key, request.sealed_state) == flow_state

    @pytest.mark.asyncio
    async def test_pkce_used_when_methods_not_advertised(
        self, signing_key, legacy_metadata: EndpointMetadata
    ) -> None:
        with patch(
            "indieauth_client.auth.flow.discover_endpoints",
            AsyncMock(return_value=legacy_metadata),
        ):
            request = await begin_authorization(PROFILE_URL, CLIENT_ID, REDIRECT_URL, signing_key)

        assert request.flow_state.code_verifier is not None
        assert "code_challenge=" in request.login_url

    @pytest.mark.asyncio
    async def test_no_pkce_without_s256(self, signing_key) -> None:
        metadata = EndpointMetadata(
            authorization_endpoint=AUTH_ENDPOINT,
            token_endpoint=TOKEN_ENDPOINT,
            code_challenge_methods_supported=["plain"],
        )
        with patch(
            "indieauth_client.auth.flow.discover_endpoints", AsyncMock(return_value=metadata)
        ):
            request = await begin_authorization(PROFILE_URL, CLIENT_ID, REDIRECT_URL, signing_key)

        assert request.flow_state.code_verifier is None
        assert "code_challenge" not in request.login_url

    @pytest.mark.asyncio
    async def test_no_server_found(self, signing_key) -> None:
        with patch(
            "indieauth_client.auth.flow.discover_endpoints", AsyncMock(return_value=None)
        ):
            with pytest.raises(EndpointNotFoundError) as exc_info:
                await begin_authorization(PROFILE_URL, CLIENT_ID, REDIRECT_URL, signing_key)

        assert "Unable to find IndieAuth server" in str(exc_info.value)


class TestCompleteAuthorization:
    """Tests for complete_authorization function."""

    def sealed(self, key, metadata, state="abc", code_verifier="verifier"):
        flow_state = FlowState(
            me=PROFILE_URL, state=state, code_verifier=code_verifier, metadata=metadata
        )
        return seal_flow_state(key, flow_state)

    @pytest.mark.asyncio
    async def test_redeems_code(self, signing_key, metadata: EndpointMetadata) -> None:
        mock_http = mock_token_endpoint({"me": PROFILE_URL, "access_token": "at"})

        result = await complete_authorization(
            signing_key,
            self.sealed(signing_key, metadata),
            {"code": "c", "state": "abc", "iss": ISSUER},
            CLIENT_ID,
            REDIRECT_URL,
            http_client=mock_http,
        )

        assert result == {"me": PROFILE_URL, "access_token": "at"}
        assert mock_http.post.call_args.kwargs["data"]["code_verifier"] == "verifier"

    @pytest.mark.asyncio
    async def test_state_mismatch_does_not_redeem(
        self, signing_key, metadata: EndpointMetadata
    ) -> None:
        mock_http = mock_token_endpoint({})

        with pytest.raises(StateMismatchError):
            await complete_authorization(
                signing_key,
                self.sealed(signing_key, metadata),
                {"code": "c", "state": "other", "iss": ISSUER},
                CLIENT_ID,
                REDIRECT_URL,
                http_client=mock_http,
            )

        mock_http.post.assert_not_called()

    @pytest.mark.asyncio
    async def test_error_callback(self, signing_key, metadata: EndpointMetadata) -> None:
        with pytest.raises(AuthorizationDeniedError) as exc_info:
            await complete_authorization(
                signing_key,
                self.sealed(signing_key, metadata),
                {
                    "error": "access_denied",
                    "error_description": "User said no",
                    "state": "abc",
                    "iss": ISSUER,
                },
                CLIENT_ID,
                REDIRECT_URL,
                http_client=mock_token_endpoint({}),
            )

        assert "access_denied - User said no" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_error_callback_with_wrong_state(
        self, signing_key, metadata: EndpointMetadata
    ) -> None:
        """Test an error redirect is not reported unless its state matches."""
        with pytest.raises(StateMismatchError) as exc_info:
            await complete_authorization(
                signing_key,
                self.sealed(signing_key, metadata),
                {"error": "access_denied", "error_description": "Visit evil.example"},
                CLIENT_ID,
                REDIRECT_URL,
                http_client=mock_token_endpoint({}),
            )

        assert "evil.example" not in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_error_callback_with_wrong_issuer(
        self, signing_key, metadata: EndpointMetadata
    ) -> None:
        with pytest.raises(IssuerMismatchError):
            await complete_authorization(
                signing_key,
                self.sealed(signing_key, metadata),
                {"error": "access_denied", "state": "abc", "iss": "https://evil.example/"},
                CLIENT_ID,
                REDIRECT_URL,
                http_client=mock_token_endpoint({}),
            )

    @pytest.mark.asyncio
    async def test_state_sealed_with_other_key(self, metadata: EndpointMetadata) -> None:
        other = import_key("another-secret-of-16+bytes")

        with pytest.raises(SignatureMismatchError):
            await complete_authorization(
                import_key("0123456789abcdef-test-secret"),
                self.sealed(other, metadata),
                {"code": "c", "state": "abc", "iss": ISSUER},
                CLIENT_ID,
                REDIRECT_URL,
                http_client=mock_token_endpoint({}),
            )


class TestWebSignIn:
    """Tests for a web form sign-in with a CSRF token and a flow state cookie."""

    @pytest.mark.asyncio
    async def test_form_to_callback(self, signing_key, metadata: EndpointMetadata) -> None:
        # Form page
        csrf = make_csrf_token(signing_key)

        # Form submission
        assert verify_csrf_token(signing_key, csrf)
        with patch(
            "indieauth_client.auth.flow.discover_endpoints", AsyncMock(return_value=metadata)
        ):
            request = await begin_authorization(PROFILE_URL, CLIENT_ID, REDIRECT_URL, signing_key)
        cookie = request.sealed_state

        # Callback
        query = {"code": "c", "state": request.flow_state.state, "iss": ISSUER}
        mock_http = mock_token_endpoint({"me": PROFILE_URL, "access_token": "at"})
        body = await complete_authorization(
            signing_key, cookie, query, CLIENT_ID, REDIRECT_URL, http_client=mock_http
        )

        assert TokenSet.from_token_response(body).me == PROFILE_URL
        sent = mock_http.post.call_args.kwargs["data"]
        assert sent["code_verifier"] == request.flow_state.code_verifier

    def test_forged_csrf_token_rejected(self, signing_key) -> None:
        forged = make_csrf_token(import_key("another-secret-of-16+bytes"))

        with pytest.raises(SignatureMismatchError):
            verify_csrf_token(signing_key, forged)

    @pytest.mark.asyncio
    async def test_tampered_cookie_rejected(self, signing_key, metadata: EndpointMetadata) -> None:
        with patch(
            "indieauth_client.auth.flow.discover_endpoints", AsyncMock(return_value=metadata)
        ):
            request = await begin_authorization(PROFILE_URL, CLIENT_ID, REDIRECT_URL, signing_key)
        payload, signature = request.sealed_state.rsplit("|", 1)
        tampered = payload.replace(PROFILE_URL, "https://evil.example/") + "|" + signature
        mock_http = mock_token_endpoint({})

        with pytest.raises(VerificationError):
            await complete_authorization(
                signing_key,
                tampered,
                {"code": "c", "state": request.flow_state.state, "iss": ISSUER},
                CLIENT_ID,
                REDIRECT_URL,
                http_client=mock_http,
            )

        mock_http.post.assert_not_called()


class TestIndieAuthFlow:
    """Tests for the command line sign-in."""

    @pytest.mark.asyncio
    async def test_run_signs_in(self, signing_key, metadata: EndpointMetadata) -> None:
        """Test a full sign-in with a simulated browser."""
        messages: list[str] = []
        login_url_shown = asyncio.Event()

        def on_status(message: str) -> None:
            messages.append(message)
            if message.startswith("Open this URL"):
                login_url_shown.set()

        async def browser() -> dict[str, list[str]]:
            await login_url_shown.wait()
            login_url = next(m for m in messages if m.startswith("Open this URL")).split("\n")[1]
            query = parse_qs(urlsplit(login_url).query)
            async with httpx.AsyncClient(trust_env=False) as client:
                response = await client.get(
                    query["redirect_uri"][0],
                    params={"code": "the-code", "state": query["state"][0], "iss": ISSUER},
                )
            assert response.status_code == 200
            return query

        token_log = RequestLog(
            lambda request: httpx.Response(200, json={"me": PROFILE_URL, "access_token": "at"})
        )

        async with make_client(token_log) as http_client:
            flow = IndieAuthFlow(
                PROFILE_URL,
                signing_key,
                callback_timeout=5,
                open_browser=False,
                on_status=on_status,
                http_client=http_client,
            )
            with patch(
                "indieauth_client.auth.flow.discover_endpoints", AsyncMock(return_value=metadata)
            ):
                browser_task = asyncio.create_task(browser())
                token_set = await flow.run()
                query = await browser_task

        assert token_set.me == PROFILE_URL
        assert token_set.access_token == "at"
        assert messages[-1] == f"Signed in as {PROFILE_URL}"

        redirect_url = query["redirect_uri"][0]
        assert redirect_url.startswith("http://127.0.0.1:")
        assert redirect_url.endswith("/callback")
        assert query["client_id"] == [redirect_url[: -len("callback")]]

        form = parse_qs(token_log.requests[0].content.decode())
        assert form["code"] == ["the-code"]
        assert form["client_id"] == query["client_id"]
        assert form["redirect_uri"] == [redirect_url]
        assert generate_code_challenge(form["code_verifier"][0]) == query["code_challenge"][0]

    @pytest.mark.asyncio
    async def test_no_server_found(self, signing_key) -> None:
        flow = IndieAuthFlow(
            PROFILE_URL, signing_key, open_browser=False, http_client=mock_token_endpoint({})
        )

        with patch(
            "indieauth_client.auth.flow.discover_endpoints", AsyncMock(return_value=None)
        ):
            with pytest.raises(IndieAuthFlowError) as exc_info:
                await flow.run()

        assert "Unable to find IndieAuth server" in str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, EndpointNotFoundError)

    @pytest.mark.asyncio
    async def test_callback_timeout(self, signing_key, metadata: EndpointMetadata) -> None:
        flow = IndieAuthFlow(
            PROFILE_URL,
            signing_key,
            callback_timeout=0.2,
            open_browser=False,
            http_client=mock_token_endpoint({}),
        )

        with patch(
            "indieauth_client.auth.flow.discover_endpoints", AsyncMock(return_value=metadata)
        ):
            with pytest.raises(IndieAuthFlowError) as exc_info:
                await flow.run()

        assert "Timeout waiting for authorization callback" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_opens_browser(self, signing_key, metadata: EndpointMetadata) -> None:
        """Test the login URL is opened and not printed when a browser is available."""
        messages: list[str] = []
        flow = IndieAuthFlow(
            PROFILE_URL,
            signing_key,
            callback_timeout=0.2,
            on_status=messages.append,
            http_client=mock_token_endpoint({}),
        )

        with patch(
            "indieauth_client.auth.flow.discover_endpoints", AsyncMock(return_value=metadata)
        ), patch("indieauth_client.auth.flow.webbrowser.open", return_value=True) as mock_open:
            with pytest.raises(IndieAuthFlowError):
                await flow.run()

        mock_open.assert_called_once()
        assert mock_open.call_args.args[0].startswith(AUTH_ENDPOINT)
        assert not any(m.startswith("Open this URL") for m in messages)
