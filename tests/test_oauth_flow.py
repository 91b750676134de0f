"""Tests for the OAuth authorization code flow."""

import asyncio
import base64
import hashlib
import json
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from labcli.browser import BrowserLaunchError
from labcli.instance import DEFAULT_CLIENT_ID
from labcli.oauth.flow import (
    SCOPES,
    AuthenticationFailedError,
    ConfigurationError,
    GrantError,
    OAuthFlow,
    build_authorization_url,
    exchange_code_for_tokens,
    refresh_token,
    resolve_client_id,
    token_endpoint,
)
from labcli.oauth.store import load_token
from labcli.oauth.tokens import TokenParseError


def form_of(request: httpx.Request) -> dict[str, str]:
    """Decode a form-encoded request body."""
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


def query_of(url: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


async def follow_redirect(redirect_uri: str, query: str) -> int:
    """Play the browser's part: GET the redirect URI and return the status code."""
    parsed = urlparse(redirect_uri)
    reader, writer = await asyncio.open_connection("127.0.0.1", parsed.port)
    writer.write(f"GET {parsed.path}?{query} HTTP/1.1\r\nHost: localhost\r\n\r\n".encode())
    await writer.drain()
    response = await reader.read()
    writer.close()
    await writer.wait_closed()
    return int(response.split(b" ", 2)[1])


class FakeBrowser:
    """Stands in for the operator's browser.

    Records the URL it was asked to open and, unless told otherwise, follows
    the redirect back to the callback server with the issued state.
    """

    def __init__(self, code: str = "auth-code", state: str | None = None, fail: bool = False, respond: bool = True):
        self.code = code
        self.state = state
        self.fail = fail
        self.respond = respond
        self.urls: list[str] = []
        self.browsers: list[str | None] = []
        self.tasks: list[asyncio.Task] = []

    def __call__(self, url: str, browser: str | None = None) -> None:
        self.urls.append(url)
        self.browsers.append(browser)

        params = query_of(url)
        if self.respond:
            state = self.state if self.state is not None else params["state"]
            self.tasks.append(
                asyncio.get_running_loop().create_task(
                    follow_redirect(params["redirect_uri"], f"code={self.code}&state={state}")
                )
            )
        if self.fail:
            raise BrowserLaunchError("no usable browser found")


class TestResolveClientId:
    """Tests for resolve_client_id."""

    def test_default_host_uses_builtin_id(self, memory_store):
        assert resolve_client_id(memory_store, "gitlab.com") == DEFAULT_CLIENT_ID

    def test_self_hosted_uses_configured_id(self, memory_store):
        memory_store.set("gitlab.example.com", "client_id", "my-app")
        assert resolve_client_id(memory_store, "gitlab.example.com") == "my-app"

    def test_self_hosted_without_id(self, memory_store):
        with pytest.raises(ConfigurationError) as exc_info:
            resolve_client_id(memory_store, "gitlab.example.com")

        message = str(exc_info.value)
        assert "labcli config set client_id <client_id> --host gitlab.example.com" in message
        assert "http://localhost:7171/auth/redirect" in message


class TestBuildAuthorizationUrl:
    """Tests for build_authorization_url."""

    def test_contains_required_params(self):
        url = build_authorization_url(
            "gitlab.example.com",
            "client-123",
            "http://localhost:7171/auth/redirect",
            "state-abc",
            "challenge-xyz",
        )
        parsed = urlparse(url)
        params = query_of(url)

        assert parsed.scheme == "https"
        assert parsed.netloc == "gitlab.example.com"
        assert parsed.path == "/oauth/authorize"
        assert params == {
            "client_id": "client-123",
            "redirect_uri": "http://localhost:7171/auth/redirect",
            "response_type": "code",
            "state": "state-abc",
            "scope": "openid profile read_user write_repository api",
            "code_challenge": "challenge-xyz",
            "code_challenge_method": "S256",
        }

    def test_protocol_and_scopes(self):
        url = build_authorization_url("gitlab.local", "c", "r", "s", "ch", protocol="http", scopes=["api"])
        assert url.startswith("http://gitlab.local/oauth/authorize?")
        assert query_of(url)["scope"] == "api"

    def test_token_endpoint(self):
        assert token_endpoint("gitlab.com") == "https://gitlab.com/oauth/token"


class TestTokenRequests:
    """Tests for the code exchange and refresh requests."""

    @pytest.mark.asyncio
    async def test_exchange_form(self, mock_token_endpoint, token_response):
        endpoint = mock_token_endpoint(lambda req: httpx.Response(200, json=token_response()))
        async with endpoint.client() as http:
            token = await exchange_code_for_tokens(
                "gitlab.com", "client-1", "code-1", "verifier-1", http_client=http
            )

        request = endpoint.requests[0]
        assert request.method == "POST"
        assert str(request.url) == "https://gitlab.com/oauth/token"
        assert form_of(request) == {
            "client_id": "client-1",
            "code": "code-1",
            "grant_type": "authorization_code",
            "redirect_uri": "http://localhost:7171/auth/redirect",
            "code_verifier": "verifier-1",
        }
        assert token.access_token == "new-access"
        assert token.refresh_token == "new-refresh"
        assert token.code_verifier == "verifier-1"
        assert not token.is_expired()

    @pytest.mark.asyncio
    async def test_refresh_form(self, mock_token_endpoint, token_response):
        endpoint = mock_token_endpoint(lambda req: httpx.Response(200, json=token_response()))
        async with endpoint.client() as http:
            token = await refresh_token(
                "gitlab.example.com", "client-1", "old-refresh", "verifier-1", protocol="http", http_client=http
            )

        request = endpoint.requests[0]
        assert str(request.url) == "http://gitlab.example.com/oauth/token"
        assert form_of(request) == {
            "client_id": "client-1",
            "grant_type": "refresh_token",
            "refresh_token": "old-refresh",
            "redirect_uri": "http://localhost:7171/auth/redirect",
            "code_verifier": "verifier-1",
        }
        assert token.code_verifier == "verifier-1"

    @pytest.mark.asyncio
    async def test_non_2xx_surfaces_body(self, mock_token_endpoint):
        body = '{"error":"invalid_grant","error_description":"The provided authorization grant is invalid"}'
        endpoint = mock_token_endpoint(lambda req: httpx.Response(400, text=body))
        async with endpoint.client() as http:
            with pytest.raises(GrantError) as exc_info:
                await exchange_code_for_tokens("gitlab.com", "c", "code", "v", http_client=http)

        assert exc_info.value.status_code == 400
        assert exc_info.value.body == body
        assert "invalid_grant" in str(exc_info.value)
        assert "HTTP 400" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_malformed_json(self, mock_token_endpoint):
        endpoint = mock_token_endpoint(lambda req: httpx.Response(200, text="<html>oops</html>"))
        async with endpoint.client() as http:
            with pytest.raises(TokenParseError, match="malformed"):
                await refresh_token("gitlab.com", "c", "r", "v", http_client=http)

    @pytest.mark.asyncio
    async def test_incomplete_token(self, mock_token_endpoint):
        endpoint = mock_token_endpoint(lambda req: httpx.Response(200, json={"access_token": "a"}))
        async with endpoint.client() as http:
            with pytest.raises(TokenParseError):
                await refresh_token("gitlab.com", "c", "r", "v", http_client=http)

    @pytest.mark.asyncio
    async def test_transport_error_propagates(self, mock_token_endpoint):
        def fail(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        endpoint = mock_token_endpoint(fail)
        async with endpoint.client() as http:
            with pytest.raises(httpx.ConnectError):
                await refresh_token("gitlab.com", "c", "r", "v", http_client=http)


class TestOAuthFlow:
    """End-to-end tests for OAuthFlow.run with a fake browser."""

    @pytest.mark.asyncio
    async def test_successful_login(self, memory_store, mock_token_endpoint, token_response):
        endpoint = mock_token_endpoint(lambda req: httpx.Response(200, json=token_response()))
        browser = FakeBrowser()
        messages: list[str] = []

        async with endpoint.client() as http:
            flow = OAuthFlow(
                "gitlab.com",
                memory_store,
                http_client=http,
                callback_port=0,
                callback_timeout=5,
                on_status=messages.append,
                open_browser=browser,
            )
            access_token = await flow.run()

        assert access_token == "new-access"
        assert await browser.tasks[0] == 200

        # Authorization request carried PKCE and a random state
        params = query_of(browser.urls[0])
        assert params["client_id"] == DEFAULT_CLIENT_ID
        assert params["code_challenge_method"] == "S256"
        assert len(params["state"]) >= 32

        # Exchange used the verifier matching the challenge
        form = form_of(endpoint.requests[0])
        assert form["code"] == "auth-code"
        assert form["redirect_uri"] == params["redirect_uri"]
        expected_challenge = (
            base64.urlsafe_b64encode(hashlib.sha256(form["code_verifier"].encode()).digest())
            .rstrip(b"=")
            .decode()
        )
        assert params["code_challenge"] == expected_challenge

        # Persisted with every field
        stored = load_token(memory_store, "gitlab.com")
        assert stored.access_token == "new-access"
        assert stored.refresh_token == "new-refresh"
        assert stored.code_verifier == form["code_verifier"]
        assert not stored.is_expired()
        assert memory_store.writes == 1

        assert messages[0].startswith("Opening https://gitlab.com/oauth/authorize?")

    @pytest.mark.asyncio
    async def test_rejected_code_persists_nothing(self, memory_store, mock_token_endpoint):
        body = json.dumps({"error": "invalid_grant"})
        endpoint = mock_token_endpoint(lambda req: httpx.Response(400, text=body))
        messages: list[str] = []

        async with endpoint.client() as http:
            flow = OAuthFlow(
                "gitlab.com",
                memory_store,
                http_client=http,
                callback_port=0,
                callback_timeout=5,
                on_status=messages.append,
                open_browser=FakeBrowser(),
            )
            with pytest.raises(AuthenticationFailedError, match="invalid_grant"):
                await flow.run()

        assert memory_store.hosts == {}
        assert memory_store.writes == 0
        assert any(m.startswith("Error occurred requesting access token:") for m in messages)

    @pytest.mark.asyncio
    async def test_forged_state_fails_without_exchange(self, memory_store, mock_token_endpoint, token_response):
        endpoint = mock_token_endpoint(lambda req: httpx.Response(200, json=token_response()))

        async with endpoint.client() as http:
            flow = OAuthFlow(
                "gitlab.com",
                memory_store,
                http_client=http,
                callback_port=0,
                callback_timeout=5,
                open_browser=FakeBrowser(state="forged"),
            )
            with pytest.raises(AuthenticationFailedError, match="invalid state"):
                await flow.run()

        assert endpoint.requests == []
        assert memory_store.hosts == {}

    @pytest.mark.asyncio
    async def test_browser_failure_is_not_fatal(self, memory_store, mock_token_endpoint, token_response):
        """Test that the operator can still complete login by opening the URL by hand."""
        endpoint = mock_token_endpoint(lambda req: httpx.Response(200, json=token_response()))
        browser = FakeBrowser(fail=True)
        messages: list[str] = []

        async with endpoint.client() as http:
            flow = OAuthFlow(
                "gitlab.com",
                memory_store,
                http_client=http,
                callback_port=0,
                callback_timeout=5,
                on_status=messages.append,
                open_browser=browser,
            )
            assert await flow.run() == "new-access"

        assert any(m.startswith("Failed opening a browser at") for m in messages)
        assert "Try entering the URL in your browser manually." in messages

    @pytest.mark.asyncio
    async def test_configured_browser_is_passed(self, memory_store, mock_token_endpoint, token_response):
        memory_store.set("gitlab.com", "browser", "firefox")
        endpoint = mock_token_endpoint(lambda req: httpx.Response(200, json=token_response()))
        browser = FakeBrowser()

        async with endpoint.client() as http:
            flow = OAuthFlow(
                "gitlab.com", memory_store, http_client=http, callback_port=0, callback_timeout=5, open_browser=browser
            )
            await flow.run()

        assert browser.browsers == ["firefox"]

    @pytest.mark.asyncio
    async def test_timeout(self, memory_store):
        flow = OAuthFlow(
            "gitlab.com",
            memory_store,
            callback_port=0,
            callback_timeout=0.05,
            open_browser=FakeBrowser(respond=False),
        )
        with pytest.raises(AuthenticationFailedError, match="timed out"):
            await flow.run()
        assert memory_store.hosts == {}

    @pytest.mark.asyncio
    async def test_missing_client_id_fails_before_io(self, memory_store):
        browser = FakeBrowser(respond=False)
        flow = OAuthFlow("gitlab.example.com", memory_store, callback_port=0, open_browser=browser)

        with pytest.raises(ConfigurationError):
            await flow.run()
        assert browser.urls == []

    @pytest.mark.asyncio
    async def test_self_hosted_uses_protocol(self, memory_store, mock_token_endpoint, token_response):
        memory_store.set("gitlab.local", "client_id", "local-app")
        endpoint = mock_token_endpoint(lambda req: httpx.Response(200, json=token_response()))
        browser = FakeBrowser()

        async with endpoint.client() as http:
            flow = OAuthFlow(
                "gitlab.local",
                memory_store,
                protocol="http",
                http_client=http,
                callback_port=0,
                callback_timeout=5,
                open_browser=browser,
            )
            await flow.run()

        assert browser.urls[0].startswith("http://gitlab.local/oauth/authorize?")
        assert query_of(browser.urls[0])["client_id"] == "local-app"
        assert str(endpoint.requests[0].url) == "http://gitlab.local/oauth/token"
