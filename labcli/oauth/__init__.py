"""OAuth2 login and token lifecycle for labcli.

Implements the authorization code flow with PKCE against a GitLab-style
provider, using a loopback redirect, and refreshes expired tokens before
they are used.

Main Components:
    OAuthManager: login, refresh-before-use, logout and status per host
    OAuthFlow: one interactive login attempt
    LocalhostCallbackServer: single-shot redirect listener
    AuthToken: token pair with its computed expiry

Quick Start:
    from labcli.config import HostConfig
    from labcli.oauth import OAuthManager

    manager = OAuthManager(HostConfig())
    await manager.authenticate("gitlab.com", on_status=print)

    # Before every API call
    token = await manager.get_access_token("gitlab.com")
"""

from .callback import (
    AuthorizationDeniedError,
    CallbackError,
    CallbackTimeoutError,
    LocalhostCallbackServer,
    StateMismatchError,
)
from .flow import (
    AuthenticationFailedError,
    ConfigurationError,
    GrantError,
    OAuthFlow,
    OAuthFlowError,
    TokenRequestError,
    build_authorization_url,
    exchange_code_for_tokens,
    refresh_token,
    resolve_client_id,
)
from .manager import AuthStatus, OAuthManager
from .pkce import PKCEPair, generate_code_challenge, generate_code_verifier, generate_pkce_pair
from .store import CredentialStore, delete_token, load_token, save_token
from .tokens import AuthToken, TokenParseError

__all__ = [
    # Manager (main entry point)
    "OAuthManager",
    "AuthStatus",
    # Flow
    "OAuthFlow",
    "resolve_client_id",
    "build_authorization_url",
    "exchange_code_for_tokens",
    "refresh_token",
    # Errors
    "OAuthFlowError",
    "ConfigurationError",
    "TokenRequestError",
    "GrantError",
    "TokenParseError",
    "AuthenticationFailedError",
    "CallbackError",
    "StateMismatchError",
    "AuthorizationDeniedError",
    "CallbackTimeoutError",
    # Tokens and storage
    "AuthToken",
    "CredentialStore",
    "load_token",
    "save_token",
    "delete_token",
    # PKCE
    "PKCEPair",
    "generate_pkce_pair",
    "generate_code_verifier",
    "generate_code_challenge",
    # Callback
    "LocalhostCallbackServer",
]
