"""OAuth2 authorization code flow with PKCE.

This module holds the pieces of an interactive login:
1. Resolve the client id for the host
2. Generate PKCE verifier/challenge and anti-CSRF state
3. Start the loopback callback server
4. Build the authorization URL and open the browser
5. Exchange the redirected code for tokens (inside the callback server)
6. Persist the token in the credential store

and the token endpoint client shared with refresh.
"""

import logging
from typing import Callable
from urllib.parse import urlencode

import httpx

from ..browser import BrowserLaunchError, open_in_browser
from ..instance import DEFAULT_CLIENT_ID, DEFAULT_PROTOCOL, is_self_hosted
from .callback import (
    CALLBACK_PORT,
    DEFAULT_TIMEOUT,
    REDIRECT_URI,
    CallbackError,
    LocalhostCallbackServer,
)
from .pkce import CHALLENGE_METHOD, generate_pkce_pair, generate_state
from .store import KEY_BROWSER, KEY_CLIENT_ID, CredentialStore, save_token
from .tokens import AuthToken, TokenParseError

logger = logging.getLogger(__name__)

SCOPES = ["openid", "profile", "read_user", "write_repository", "api"]

HTTP_TIMEOUT = 30.0


class OAuthFlowError(Exception):
    """Error during OAuth login or refresh."""

    pass


class ConfigurationError(OAuthFlowError):
    """Login cannot start because host configuration is incomplete."""

    pass


class TokenRequestError(OAuthFlowError):
    """The token endpoint rejected a request."""

    pass


class GrantError(TokenRequestError):
    """Non-2xx answer from the token endpoint.

    The provider's response body is kept verbatim in the message and in
    ``body`` since it is the only diagnostic the operator gets.
    """

    def __init__(self, message: str, status_code: int, body: str):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class AuthenticationFailedError(OAuthFlowError):
    """Terminal failure of an interactive login attempt."""

    pass


def resolve_client_id(store: CredentialStore, hostname: str) -> str:
    """Return the OAuth client id to use for hostname.

    The default public instance uses the built-in public client id.
    Self-hosted instances need their own application registered and its id
    stored as the host's ``client_id``.

    Raises:
        ConfigurationError: If a self-hosted host has no client_id
    """
    if not is_self_hosted(hostname):
        return DEFAULT_CLIENT_ID

    client_id = store.get(hostname, KEY_CLIENT_ID)
    if not client_id:
        raise ConfigurationError(
            f"No OAuth client id configured for {hostname}. "
            f"Register an OAuth application with redirect URI {REDIRECT_URI} "
            f"and scopes '{' '.join(SCOPES)}', then run "
            f"'labcli config set client_id <client_id> --host {hostname}'."
        )
    return client_id


def build_authorization_url(
    hostname: str,
    client_id: str,
    redirect_uri: str,
    state: str,
    code_challenge: str,
    protocol: str = DEFAULT_PROTOCOL,
    scopes: list[str] | None = None,
) -> str:
    """Build the URL the operator's browser is sent to."""
    params: dict[str, str] = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "state": state,
        "scope": " ".join(scopes or SCOPES),
        "code_challenge": code_challenge,
        "code_challenge_method": CHALLENGE_METHOD,
    }
    return f"{protocol}://{hostname}/oauth/authorize?{urlencode(params)}"


def token_endpoint(hostname: str, protocol: str = DEFAULT_PROTOCOL) -> str:
    return f"{protocol}://{hostname}/oauth/token"


async def _request_token(
    url: str,
    form: dict[str, str],
    code_verifier: str,
    action: str,
    http_client: httpx.AsyncClient | None,
) -> AuthToken:
    """POST a form to the token endpoint and parse the answer.

    Transport errors (httpx.TransportError) are not wrapped.
    """
    http = http_client or httpx.AsyncClient(timeout=HTTP_TIMEOUT)
    should_close = http_client is None

    try:
        response = await http.post(url, data=form, headers={"Accept": "application/json"})
    finally:
        if should_close:
            await http.aclose()

    if not response.is_success:
        body = response.text
        raise GrantError(
            f"{action} failed (HTTP {response.status_code}): {body.strip()}",
            status_code=response.status_code,
            body=body,
        )

    try:
        data = response.json()
    except ValueError as e:
        raise TokenParseError(f"{action} returned a malformed token response: {e}") from e

    return AuthToken.from_token_response(data, code_verifier)


async def exchange_code_for_tokens(
    hostname: str,
    client_id: str,
    code: str,
    code_verifier: str,
    redirect_uri: str = REDIRECT_URI,
    protocol: str = DEFAULT_PROTOCOL,
    http_client: httpx.AsyncClient | None = None,
) -> AuthToken:
    """Redeem an authorization code (grant_type=authorization_code).

    Raises:
        GrantError: On a non-2xx response
        TokenParseError: If the body is not a complete token
        httpx.TransportError: On network failure
    """
    form = {
        "client_id": client_id,
        "code": code,
        "grant_type": "authorization_code",
        "redirect_uri": redirect_uri,
        "code_verifier": code_verifier,
    }
    logger.debug(f"Exchanging authorization code at {token_endpoint(hostname, protocol)}")
    return await _request_token(
        token_endpoint(hostname, protocol), form, code_verifier, "Token exchange", http_client
    )


async def refresh_token(
    hostname: str,
    client_id: str,
    refresh_token_value: str,
    code_verifier: str,
    redirect_uri: str = REDIRECT_URI,
    protocol: str = DEFAULT_PROTOCOL,
    http_client: httpx.AsyncClient | None = None,
) -> AuthToken:
    """Mint a new token pair (grant_type=refresh_token).

    The verifier of the original authorization is sent again and carried
    over to the new token.

    Raises:
        GrantError: On a non-2xx response
        TokenParseError: If the body is not a complete token
        httpx.TransportError: On network failure
    """
    form = {
        "client_id": client_id,
        "grant_type": "refresh_token",
        "refresh_token": refresh_token_value,
        "redirect_uri": redirect_uri,
        "code_verifier": code_verifier,
    }
    logger.debug(f"Refreshing token at {token_endpoint(hostname, protocol)}")
    return await _request_token(
        token_endpoint(hostname, protocol), form, code_verifier, "Token refresh", http_client
    )


class OAuthFlow:
    """Runs one interactive login for a host.

    Usage:
        flow = OAuthFlow("gitlab.com", config, on_status=print)
        access_token = await flow.run()
    """

    def __init__(
        self,
        hostname: str,
        store: CredentialStore,
        protocol: str = DEFAULT_PROTOCOL,
        http_client: httpx.AsyncClient | None = None,
        callback_port: int = CALLBACK_PORT,
        callback_timeout: float | None = DEFAULT_TIMEOUT,
        on_status: Callable[[str], None] | None = None,
        open_browser: Callable[[str, str | None], None] = open_in_browser,
    ):
        """Initialize the flow.

        Args:
            hostname: Host to log in to
            store: Credential store the resulting token is written to
            protocol: Scheme used for the provider endpoints
            http_client: Optional shared HTTP client for the token endpoint
            callback_port: Loopback port for the redirect listener
            callback_timeout: Seconds to wait for the browser, None for no limit
            on_status: Receives operator-facing progress messages
            open_browser: Browser launcher, replaceable in tests
        """
        self.hostname = hostname
        self.store = store
        self.protocol = protocol
        self.http_client = http_client
        self.callback_port = callback_port
        self.callback_timeout = callback_timeout
        self.on_status = on_status or (lambda msg: None)
        self.open_browser = open_browser

        self._client_id = ""
        self._code_verifier = ""
        self._redirect_uri = REDIRECT_URI

    def _emit_status(self, message: str) -> None:
        logger.info(message)
        self.on_status(message)

    async def _exchange(self, code: str) -> AuthToken:
        self._emit_status("Exchanging authorization code for tokens...")
        return await exchange_code_for_tokens(
            self.hostname,
            self._client_id,
            code,
            self._code_verifier,
            redirect_uri=self._redirect_uri,
            protocol=self.protocol,
            http_client=self.http_client,
        )

    def _launch_browser(self, auth_url: str) -> None:
        browser = self.store.get(self.hostname, KEY_BROWSER) or None
        try:
            self.open_browser(auth_url, browser)
        except BrowserLaunchError as e:
            self._emit_status(f"Failed opening a browser at {auth_url}")
            self._emit_status(f"Encountered error: {e}")
            self._emit_status("Try entering the URL in your browser manually.")

    async def run(self) -> str:
        """Execute the login and return the new access token.

        Raises:
            ConfigurationError: If no client id is available (before any I/O)
            AuthenticationFailedError: If the attempt did not produce a token
        """
        self._client_id = resolve_client_id(self.store, self.hostname)

        pkce = generate_pkce_pair()
        state = generate_state()
        self._code_verifier = pkce.verifier

        server = LocalhostCallbackServer(
            exchange=self._exchange,
            expected_state=state,
            port=self.callback_port,
            timeout=self.callback_timeout,
            on_status=self.on_status,
        )

        try:
            async with server:
                self._redirect_uri = server.redirect_uri
                auth_url = build_authorization_url(
                    self.hostname,
                    self._client_id,
                    self._redirect_uri,
                    state,
                    pkce.challenge,
                    protocol=self.protocol,
                )

                self._emit_status(f"Opening {auth_url} in your browser.")
                self._launch_browser(auth_url)
                self._emit_status(f"Waiting for authorization on {self._redirect_uri}")

                token = await server.wait_for_callback()
        except (CallbackError, TokenRequestError, TokenParseError, httpx.HTTPError) as e:
            raise AuthenticationFailedError(f"authentication failed: {e}") from e

        save_token(self.store, self.hostname, token)
        self._emit_status(f"Logged in to {self.hostname}.")
        return token.access_token
