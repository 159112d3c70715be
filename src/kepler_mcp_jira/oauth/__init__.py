"""OAuth 2.0 module for the Kepler Jira auth core.

Authorization Code flow with PKCE where the pending session travels
encrypted inside the ``state`` parameter instead of server-side storage.
"""

from kepler_mcp_jira.oauth.errors import (
    AuthError,
    AuthorizationDeniedError,
    ExchangeFailedError,
    ExpiredOrInvalidSessionError,
    InvalidStateError,
    MalformedResponseError,
    MisconfiguredClientError,
)
from kepler_mcp_jira.oauth.flows import (
    AuthorizationRequest,
    OAuth2AuthorizationCodeFlow,
    TokenSet,
    create_authorization_flow,
    parse_callback,
)
from kepler_mcp_jira.oauth.pkce import PKCEPair, generate_code_challenge, generate_code_verifier
from kepler_mcp_jira.oauth.session import AuthSession, SessionCodec, derive_state_key
from kepler_mcp_jira.oauth.token_manager import TokenManager
from kepler_mcp_jira.oauth.token_store import (
    EncryptedFileTokenStore,
    InMemoryTokenStore,
    TokenStore,
    create_token_store,
)

__all__ = [
    "AuthError",
    "AuthSession",
    "AuthorizationDeniedError",
    "AuthorizationRequest",
    "EncryptedFileTokenStore",
    "ExchangeFailedError",
    "ExpiredOrInvalidSessionError",
    "InMemoryTokenStore",
    "InvalidStateError",
    "MalformedResponseError",
    "MisconfiguredClientError",
    "OAuth2AuthorizationCodeFlow",
    "PKCEPair",
    "SessionCodec",
    "TokenManager",
    "TokenSet",
    "TokenStore",
    "create_authorization_flow",
    "create_token_store",
    "derive_state_key",
    "generate_code_challenge",
    "generate_code_verifier",
    "parse_callback",
]
