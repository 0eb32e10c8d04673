"""Admin authentication."""

import abc
from typing import Dict, Mapping, Optional

import requests

from ..config import AuthConfig, StoreConfig
from ..logging import get_logger
from ..models import User

logger = get_logger(__name__)

class AuthProvider(abc.ABC):
    """Resolves the current user from request cookies."""

    @abc.abstractmethod
    def get_current_user(self, cookies: Mapping[str, str]) -> Optional[User]:
        """
        Identify the logged-in user.

        Args:
            cookies: Request cookies by name

        Returns:
            Optional[User]: The user, or None when the request is anonymous
        """
        pass

class StaticAuthProvider(AuthProvider):
    """Accepts a fixed set of session tokens, for development and testing."""

    def __init__(self, tokens: Dict[str, str], cookie_name: str = "sb-access-token"):
        """Initialize with a token -> email map."""
        self.tokens = dict(tokens)
        self.cookie_name = cookie_name

    def get_current_user(self, cookies: Mapping[str, str]) -> Optional[User]:
        token = cookies.get(self.cookie_name)
        if not token or token not in self.tokens:
            return None
        email = self.tokens[token]
        return User(id=email, email=email)

class SupabaseAuthProvider(AuthProvider):
    """Validates the session token against Supabase Auth."""

    def __init__(self, store_config: StoreConfig, cookie_name: str = "sb-access-token",
                 session: Optional[requests.Session] = None):
        """Initialize the auth client."""
        if not store_config.url or not store_config.anon_key:
            raise ValueError("Supabase auth requires url and anon key")
        self.user_url = f"{store_config.url.rstrip('/')}/auth/v1/user"
        self.anon_key = store_config.anon_key
        self.cookie_name = cookie_name
        self.timeout = store_config.timeout
        self.session = session or requests.Session()

    def get_current_user(self, cookies: Mapping[str, str]) -> Optional[User]:
        token = cookies.get(self.cookie_name)
        if not token:
            return None

        try:
            response = self.session.get(self.user_url, headers={
                "apikey": self.anon_key,
                "Authorization": f"Bearer {token}",
            }, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.error("auth_request_failed", error=str(e))
            return None

        if response.status_code != 200:
            logger.info("auth_rejected", status=response.status_code)
            return None

        try:
            data = response.json()
        except ValueError:
            logger.error("auth_invalid_response")
            return None
        if not data.get("id"):
            return None
        return User(id=str(data["id"]), email=data.get("email"))

def create_auth_provider(config: AuthConfig, store_config: StoreConfig) -> AuthProvider:
    """Create the auth provider selected by configuration."""
    if config.provider == "static":
        if not config.tokens:
            logger.warning("no_admin_tokens", message="Admin routes will reject every request")
        return StaticAuthProvider(config.tokens, config.cookie_name)
    if config.provider == "supabase":
        return SupabaseAuthProvider(store_config, config.cookie_name)
    raise ValueError(f"Unsupported auth provider: {config.provider}")
