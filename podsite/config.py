"""Configuration management for the PodSite package."""

import os
from dataclasses import dataclass, field
from typing import Optional, Dict, Any
import yaml
from dotenv import load_dotenv

@dataclass
class SiteConfig:
    """Public facing site settings used in links and email templates."""
    name: str = "PodSite"
    url: str = "http://localhost:8080"
    tagline: str = ""
    host_name: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SiteConfig':
        """Create SiteConfig from dictionary."""
        return cls(
            name=data.get("name", "PodSite"),
            url=(data.get("url") or os.environ.get("SITE_URL") or "http://localhost:8080").rstrip("/"),
            tagline=data.get("tagline", ""),
            host_name=data.get("host_name", "")
        )

@dataclass
class StoreConfig:
    """Configuration for the episode/transcript/subscriber store."""
    provider: str = "memory"  # Options: "memory", "supabase"
    url: Optional[str] = None
    anon_key: Optional[str] = None
    service_role_key: Optional[str] = None
    timeout: int = 10
    seed_path: Optional[str] = None  # Seed data for the "memory" provider

    @property
    def api_key(self) -> Optional[str]:
        """Key used for server side calls, preferring the service role key."""
        return self.service_role_key or self.anon_key

    def validate(self):
        """Validate the configuration."""
        if self.provider not in ("memory", "supabase"):
            raise ValueError(f"Unsupported store provider: {self.provider}")
        if self.provider == "supabase" and not (self.url and self.api_key):
            raise ValueError("Supabase store requires url and an API key")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StoreConfig':
        """Create StoreConfig from dictionary."""
        return cls(
            provider=data.get("provider", "memory"),
            url=data.get("url") or os.environ.get("SUPABASE_URL"),
            anon_key=data.get("anon_key") or os.environ.get("SUPABASE_ANON_KEY"),
            service_role_key=data.get("service_role_key") or os.environ.get("SUPABASE_SERVICE_ROLE_KEY"),
            timeout=data.get("timeout", 10),
            seed_path=data.get("seed_path")
        )

@dataclass
class EmailConfig:
    """Configuration for the transactional email provider."""
    api_key: Optional[str] = None
    from_address: str = "PodSite <noreply@example.com>"
    api_url: str = "https://api.resend.com/emails"
    send_interval: float = 0.6
    timeout: int = 10
    notify_on_publish: bool = False

    @property
    def configured(self) -> bool:
        """Whether an API key is available."""
        return bool(self.api_key)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EmailConfig':
        """Create EmailConfig from dictionary."""
        return cls(
            api_key=data.get("api_key") or os.environ.get("RESEND_API_KEY"),
            from_address=data.get("from_address") or os.environ.get("EMAIL_FROM") or "PodSite <noreply@example.com>",
            api_url=data.get("api_url", "https://api.resend.com/emails"),
            send_interval=data.get("send_interval", 0.6),
            timeout=data.get("timeout", 10),
            notify_on_publish=data.get("notify_on_publish", False)
        )

@dataclass
class AuthConfig:
    """Configuration for admin authentication."""
    provider: str = "static"  # Options: "static", "supabase"
    cookie_name: str = "sb-access-token"
    tokens: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuthConfig':
        """Create AuthConfig from dictionary."""
        return cls(
            provider=data.get("provider", "static"),
            cookie_name=data.get("cookie_name", "sb-access-token"),
            tokens=dict(data.get("tokens") or {})
        )

@dataclass
class WebServerConfig:
    """Configuration for web server."""
    host: str = "localhost"
    port: int = 8080

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WebServerConfig':
        """Create WebServerConfig from dictionary."""
        return cls(
            host=data.get("host", "localhost"),
            port=data.get("port", 8080)
        )

@dataclass
class RateLimitRule:
    """A request budget for one endpoint family."""
    max_requests: int
    window_ms: int

    @classmethod
    def from_dict(cls, data: Dict[str, Any], default: 'RateLimitRule') -> 'RateLimitRule':
        """Create RateLimitRule from dictionary, falling back to a default."""
        if not data:
            return cls(default.max_requests, default.window_ms)
        return cls(
            max_requests=data.get("max_requests", default.max_requests),
            window_ms=data.get("window_ms", default.window_ms)
        )

@dataclass
class RateLimitConfig:
    """Configuration for the public endpoint rate limiter."""
    max_keys: int = 10_000
    subscribe: RateLimitRule = None
    verify: RateLimitRule = None
    notifications: RateLimitRule = None
    inbox: RateLimitRule = None

    def __post_init__(self):
        """Initialize default rules if not provided."""
        if self.subscribe is None:
            self.subscribe = RateLimitRule(max_requests=5, window_ms=60_000)
        if self.verify is None:
            self.verify = RateLimitRule(max_requests=10, window_ms=60_000)
        if self.notifications is None:
            self.notifications = RateLimitRule(max_requests=10, window_ms=60_000)
        if self.inbox is None:
            self.inbox = RateLimitRule(max_requests=3, window_ms=60_000)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RateLimitConfig':
        """Create RateLimitConfig from dictionary."""
        defaults = cls()
        return cls(
            max_keys=data.get("max_keys", 10_000),
            subscribe=RateLimitRule.from_dict(data.get("subscribe"), defaults.subscribe),
            verify=RateLimitRule.from_dict(data.get("verify"), defaults.verify),
            notifications=RateLimitRule.from_dict(data.get("notifications"), defaults.notifications),
            inbox=RateLimitRule.from_dict(data.get("inbox"), defaults.inbox)
        )

@dataclass
class Config:
    """Main configuration class."""
    site: SiteConfig = None
    store: StoreConfig = None
    email: EmailConfig = None
    auth: AuthConfig = None
    web_server: WebServerConfig = None
    rate_limit: RateLimitConfig = None
    log_level: str = "INFO"

    def __post_init__(self):
        """Initialize default configs if not provided."""
        if self.site is None:
            self.site = SiteConfig()
        if self.store is None:
            self.store = StoreConfig()
        if self.email is None:
            self.email = EmailConfig()
        if self.auth is None:
            self.auth = AuthConfig()
        if self.web_server is None:
            self.web_server = WebServerConfig()
        if self.rate_limit is None:
            self.rate_limit = RateLimitConfig()

    def validate(self):
        """Validate the configuration."""
        self.store.validate()
        if self.auth.provider not in ("static", "supabase"):
            raise ValueError(f"Unsupported auth provider: {self.auth.provider}")

def load_config(path=None):
    """Load the configuration file and substitute environment variables."""
    if path is None:
        path = "config.yaml"
    # Load environment variables before expansion so .env values are visible
    load_dotenv()

    config_data = {}
    if os.path.exists(path):
        with open(path, 'r') as f:
            content = f.read()
        # Substitute environment variables in the content
        content = os.path.expandvars(content)
        config_data = yaml.safe_load(content) or {}

    config = Config(
        site=SiteConfig.from_dict(config_data.get("site", {})),
        store=StoreConfig.from_dict(config_data.get("store", {})),
        email=EmailConfig.from_dict(config_data.get("email", {})),
        auth=AuthConfig.from_dict(config_data.get("auth", {})),
        web_server=WebServerConfig.from_dict(config_data.get("web_server", {})),
        rate_limit=RateLimitConfig.from_dict(config_data.get("rate_limit", {})),
        log_level=config_data.get("log_level", "INFO")
    )

    return config
