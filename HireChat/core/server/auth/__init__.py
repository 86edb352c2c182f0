"""
Authentication module for the server.

Tokens are verified against the internal JWT secret first and fall back to
the external identity provider. Tokens are extracted from the handshake:
query parameters, the Authorization header or the ``authToken`` cookie.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import parse_qs, urlsplit

import aiohttp
import jwt

from HireChat.config import config
from HireChat.core.server.interfaces import Authenticator, AuthResult

logger = logging.getLogger(__name__)

EmailResolver = Callable[[str], Awaitable[Optional[int]]]


def _as_user_id(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class JWTAuthenticator:
    """
    Verifies tokens signed with the internal secret.

    ``sub`` carries the numeric user id; ``email`` and ``type_user`` are
    optional claims.
    """

    def __init__(self, secret: str = None, algorithm: str = None):
        """
        Initialize JWT authenticator.

        Args:
            secret: JWT secret key (defaults to config.JWT_SECRET)
            algorithm: JWT algorithm (defaults to config.JWT_ALGORITHM)
        """
        self._secret = secret or config.JWT_SECRET
        self._algorithm = algorithm or config.JWT_ALGORITHM

    async def authenticate(self, token: str) -> AuthResult:
        """
        Validate a JWT token.

        Args:
            token: JWT token string

        Returns:
            AuthResult with authentication status and identity
        """
        try:
            payload = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except jwt.ExpiredSignatureError:
            logger.debug("JWT verification failed: token expired")
            return AuthResult.failure("Token has expired", "TOKEN_EXPIRED")
        except jwt.InvalidTokenError as e:
            logger.debug("JWT verification failed: %s", e)
            return AuthResult.failure(f"Invalid token: {e}")

        user_id = _as_user_id(payload.get("sub"))
        if user_id is None:
            return AuthResult.failure("No user id in token payload", "INVALID_PAYLOAD")

        return AuthResult(
            success=True,
            user_id=user_id,
            email=payload.get("email"),
            role=payload.get("type_user") or payload.get("role"),
            claims=payload,
        )


class IdentityProviderAuthenticator:
    """
    Verifies tokens with the external identity provider.

    Calls ``GET {base_url}/auth/v1/user``. Provider ids that are not numeric
    are mapped to local users by email through ``resolve_email``.
    """

    def __init__(
        self,
        base_url: str = None,
        api_key: str = None,
        timeout: float = None,
        resolve_email: Optional[EmailResolver] = None,
    ):
        self._base_url = (base_url if base_url is not None else config.IDP_URL).rstrip("/")
        self._api_key = api_key if api_key is not None else config.IDP_API_KEY
        self._timeout = timeout if timeout is not None else config.IDP_TIMEOUT
        self._resolve_email = resolve_email
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    @property
    def enabled(self) -> bool:
        return bool(self._base_url)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            async with self._lock:
                if self._session is None or self._session.closed:
                    self._session = aiohttp.ClientSession(
                        timeout=aiohttp.ClientTimeout(total=self._timeout),
                    )
        return self._session

    async def close(self) -> None:
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
            self._session = None

    async def authenticate(self, token: str) -> AuthResult:
        if not self.enabled:
            return AuthResult.failure("Identity provider not configured", "IDP_DISABLED")

        headers = {"Authorization": f"Bearer {token}"}
        if self._api_key:
            headers["apikey"] = self._api_key

        try:
            session = await self._get_session()
            async with session.get(f"{self._base_url}/auth/v1/user", headers=headers) as response:
                if response.status != 200:
                    logger.debug("Identity provider rejected token (status %s)", response.status)
                    return AuthResult.failure("Invalid token")
                user: Dict[str, Any] = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning("Identity provider unavailable: %s", e)
            return AuthResult.failure("Identity provider unavailable", "IDP_UNAVAILABLE")

        email = user.get("email")
        metadata = user.get("user_metadata") or {}
        user_id = _as_user_id(user.get("id"))
        if user_id is None and email and self._resolve_email is not None:
            user_id = await self._resolve_email(email)
        if user_id is None:
            return AuthResult.failure("Token user is unknown to this service", "UNKNOWN_USER")

        return AuthResult(
            success=True,
            user_id=user_id,
            email=email,
            role=metadata.get("type_user") or user.get("role"),
            claims=user,
        )


class ChainedAuthenticator:
    """Tries authenticators in order; the first success wins."""

    def __init__(self, *authenticators: Authenticator):
        self._authenticators = [a for a in authenticators if a is not None]

    async def authenticate(self, token: str) -> AuthResult:
        result = AuthResult.failure("Invalid token")
        for authenticator in self._authenticators:
            result = await authenticator.authenticate(token)
            if result.success:
                return result
        return result

    async def close(self) -> None:
        for authenticator in self._authenticators:
            close = getattr(authenticator, "close", None)
            if close is not None:
                await close()


class DefaultTokenExtractor:
    """
    Default token extractor for websocket handshakes.

    Supports extraction from:
    - URL query parameters (?token=xxx or ?auth=xxx)
    - Authorization header (Bearer xxx)
    - Cookie headers (authToken=xxx)
    """

    QUERY_KEYS = ("token", "auth")
    COOKIE_NAME = "authToken"

    def extract(self, websocket: Any) -> Optional[str]:
        return (
            self._extract_from_query(websocket)
            or self._extract_from_header(websocket)
            or self._extract_from_cookie(websocket)
        )

    def _extract_from_query(self, websocket: Any) -> Optional[str]:
        path = self._get_path(websocket)
        if not path:
            return None
        params = parse_qs(urlsplit(path).query)
        for key in self.QUERY_KEYS:
            values = params.get(key)
            if values and values[0].strip():
                value = values[0].strip()
                return value[7:].strip() if value.lower().startswith("bearer ") else value
        return None

    def _extract_from_header(self, websocket: Any) -> Optional[str]:
        header = self._get_header(websocket, "Authorization")
        if header and header.lower().startswith("bearer "):
            return header[7:].strip() or None
        return None

    def _extract_from_cookie(self, websocket: Any) -> Optional[str]:
        cookie_header = self._get_header(websocket, "Cookie") or ""
        for cookie in cookie_header.split(";"):
            name, _, value = cookie.strip().partition("=")
            if name == self.COOKIE_NAME and value:
                return value.strip()
        return None

    @staticmethod
    def _get_path(websocket: Any) -> Optional[str]:
        request = getattr(websocket, "request", None)
        return getattr(request, "path", None) if request is not None else None

    @staticmethod
    def _get_header(websocket: Any, name: str) -> Optional[str]:
        request = getattr(websocket, "request", None)
        headers = getattr(request, "headers", None) if request is not None else None
        if headers is None:
            return None
        return headers.get(name)


class AuthenticationMiddleware:
    """
    Middleware that wraps authentication logic.

    Provides a clean interface for authenticating connections
    and handling authentication failures.
    """

    def __init__(self, authenticator: Authenticator, token_extractor: DefaultTokenExtractor = None):
        """
        Initialize middleware.

        Args:
            authenticator: Authenticator implementation
            token_extractor: Handshake token extractor
        """
        self._authenticator = authenticator
        self._token_extractor = token_extractor or DefaultTokenExtractor()

    @property
    def authenticator(self) -> Authenticator:
        return self._authenticator

    async def authenticate_token(self, token: Optional[str]) -> AuthResult:
        if not token:
            return AuthResult.failure("No authentication token provided", "NO_TOKEN")
        return await self._authenticator.authenticate(token)

    async def authenticate_connection(self, transport_context: Any) -> AuthResult:
        """
        Authenticate a connection.

        Args:
            transport_context: Transport-specific context

        Returns:
            AuthResult with authentication status
        """
        return await self.authenticate_token(self._token_extractor.extract(transport_context))


def create_authenticator(resolve_email: Optional[EmailResolver] = None) -> ChainedAuthenticator:
    """Internal JWT first, then the identity provider when one is configured."""
    idp = IdentityProviderAuthenticator(resolve_email=resolve_email)
    return ChainedAuthenticator(JWTAuthenticator(), idp if idp.enabled else None)


__all__ = [
    'JWTAuthenticator',
    'IdentityProviderAuthenticator',
    'ChainedAuthenticator',
    'DefaultTokenExtractor',
    'AuthenticationMiddleware',
    'create_authenticator',
]
