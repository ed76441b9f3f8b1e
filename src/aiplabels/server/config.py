"""
Configuration management for AIPLabels.

Configuration is loaded from:
1. Environment variables (highest priority)
2. config.yaml file
3. Default values (lowest priority)

The API service and the web client build one ``Settings`` instance at
startup and hand it to every component; nothing reads configuration at
import time.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import yaml

# Public, China and US Government cloud storage endpoints
AZURE_ENDPOINT_SUFFIXES = (
    "core.windows.net",
    "core.chinacloudapi.cn",
    "core.usgovcloudapi.net",
)


class ServerSettings(BaseSettings):
    """Server configuration."""

    # Default to localhost for security. Set to "0.0.0.0" explicitly for production
    # behind a reverse proxy (nginx, traefik, etc.)
    host: str = "127.0.0.1"
    port: int = 8000
    web_port: int = 8080
    debug: bool = False
    environment: Literal["development", "staging", "production"] = "development"


class AuthSettings(BaseSettings):
    """
    Azure AD app registration used by the API service.

    The same registration validates inbound bearer tokens (audience) and acts
    as the confidential client for the on-behalf-of exchange. Exactly one
    credential is used, selected by ``use_certificate``:

    - client secret: ``client_secret``
    - client certificate: ``certificate_path`` (PEM with private key) and
      ``certificate_thumbprint`` (SHA-1 hex, as shown in the portal)

    Environment variables:
    - AIPLABELS_AUTH__TENANT_ID
    - AIPLABELS_AUTH__CLIENT_ID
    - AIPLABELS_AUTH__CLIENT_SECRET
    - AIPLABELS_AUTH__USE_CERTIFICATE
    - AIPLABELS_AUTH__CERTIFICATE_PATH
    - AIPLABELS_AUTH__CERTIFICATE_THUMBPRINT
    """

    provider: Literal["azure_ad", "none"] = "azure_ad"
    instance: str = "https://login.microsoftonline.com"
    tenant_id: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    use_certificate: bool = False
    certificate_path: str | None = None
    certificate_thumbprint: str | None = None

    @property
    def authority(self) -> str | None:
        if self.tenant_id:
            return f"{self.instance.rstrip('/')}/{self.tenant_id}"
        return None

    @model_validator(mode="after")
    def validate_credential_mode(self) -> "AuthSettings":
        """Certificate and secret modes are mutually exclusive and must be complete."""
        if self.provider != "azure_ad":
            return self
        if self.use_certificate:
            if not self.certificate_path or not self.certificate_thumbprint:
                raise ValueError(
                    "auth.use_certificate requires auth.certificate_path and "
                    "auth.certificate_thumbprint"
                )
        return self


class StorageSettings(BaseSettings):
    """
    Storage backend configuration.

    When ``use_managed_identity`` is true the account URL from each request's
    blob URL is used with a managed identity / Azure CLI credential chain;
    otherwise ``connection_string`` is required.
    ``account_url`` names the account the web client uploads to under
    managed identity. ``endpoint_suffixes`` lists the storage endpoints a
    request URL may name; with a connection string the URL must also name
    the connection string's account.
    """

    connection_string: str | None = None
    use_managed_identity: bool = False
    account_url: str | None = None
    endpoint_suffixes: list[str] = Field(default_factory=lambda: list(AZURE_ENDPOINT_SUFFIXES))
    source_container: str = "source"
    target_container: str = "target"
    max_file_size_mb: int = 100
    download_chunk_size: int = 4 * 1024 * 1024


class ProtectionSettings(BaseSettings):
    """
    Microsoft Information Protection SDK configuration.

    Requires:
    - Windows with .NET Framework
    - MIP SDK assemblies (Microsoft.InformationProtection.File)
    - pythonnet package

    ``state_dir`` holds the SDK's on-disk cache and logs. It is shared by
    every engine in the process.
    """

    enabled: bool = True
    sdk_path: str | None = None
    state_dir: str = "mip_data"
    app_name: str = "AIPLabels"
    app_version: str = "1.0.0"
    locale: str = "en-US"
    log_level: Literal["Trace", "Info", "Warning", "Error"] = "Error"
    default_justification: str = "Label modified by App."


class SessionPoolSettings(BaseSettings):
    """Identity-keyed engine cache."""

    ttl_seconds: int = 1800  # Unload engines idle for 30 minutes
    max_engines: int = 32


class TimeoutSettings(BaseSettings):
    """
    Centralized timeout configuration.

    All timeout values in seconds. Configurable via environment variables:
    - AIPLABELS_TIMEOUTS__IDENTITY_EXCHANGE=30.0
    - AIPLABELS_TIMEOUTS__STORAGE_IO=60.0
    - etc.
    """

    identity_exchange: float = 30.0  # On-behalf-of and silent token calls
    jwks_fetch: float = 10.0  # Signing key download
    storage_io: float = 60.0  # Blob / share download and upload
    protection_call: float = 60.0  # Engine creation, handler creation, label reads
    commit: float = 120.0  # Handler commit (may re-encrypt the whole file)
    api_request: float = 180.0  # Web client -> API


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    file: str | None = None
    json_format: bool | None = None  # None = JSON unless server.debug


class CORSSettings(BaseSettings):
    """CORS configuration for production security."""

    allowed_origins: list[str] = Field(
        default_factory=lambda: ["http://localhost:8080"]
    )
    allow_credentials: bool = True
    allow_methods: list[str] = Field(default_factory=lambda: ["GET", "POST", "OPTIONS"])
    allow_headers: list[str] = Field(
        default_factory=lambda: [
            "Accept",
            "Authorization",
            "Content-Type",
            "X-Request-ID",
        ]
    )

    @model_validator(mode="after")
    def validate_cors_security(self) -> "CORSSettings":
        """Wildcard origins together with credentials would let any site call the API."""
        if "*" in self.allowed_origins and self.allow_credentials:
            raise ValueError(
                "SECURITY ERROR: Cannot use wildcard (*) in allowed_origins with "
                "allow_credentials=True. Specify explicit origins instead."
            )
        return self


class WebClientSettings(BaseSettings):
    """
    Browser-facing web client.

    The web client has its own app registration (``client_id`` /
    ``client_secret``) and requests ``api_scope`` to call the API service.
    """

    api_base_url: str = "http://localhost:8000"
    api_scope: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    redirect_path: str = "/auth/callback"
    session_secret: str = "change-me"
    default_label_id: str | None = None
    custom_label_id: str | None = None
    custom_permission_users: list[str] = Field(default_factory=list)
    custom_permission_rights: list[str] = Field(default_factory=lambda: ["VIEW", "EDIT"])
    max_retries: int = 3
    session_ttl_seconds: int = 8 * 60 * 60  # Drop token caches idle for 8 hours
    max_sessions: int = 1000


class Settings(BaseSettings):
    """Main settings class that combines all configuration sections."""

    model_config = SettingsConfigDict(
        env_prefix="AIPLABELS_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    server: ServerSettings = Field(default_factory=ServerSettings)
    auth: AuthSettings = Field(default_factory=AuthSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    protection: ProtectionSettings = Field(default_factory=ProtectionSettings)
    session_pool: SessionPoolSettings = Field(default_factory=SessionPoolSettings)
    timeouts: TimeoutSettings = Field(default_factory=TimeoutSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    cors: CORSSettings = Field(default_factory=CORSSettings)
    web: WebClientSettings = Field(default_factory=WebClientSettings)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # Environment variables override init values (the YAML file)
        return env_settings, init_settings, dotenv_settings, file_secret_settings

    @property
    def use_json_logs(self) -> bool:
        if self.logging.json_format is not None:
            return self.logging.json_format
        return not self.server.debug


def load_yaml_config(path: Path | None = None) -> dict:
    """Load configuration from YAML file."""
    if path is None:
        candidates = [
            Path("config.yaml"),
            Path("config/config.yaml"),
            Path.home() / ".aiplabels" / "config.yaml",
            Path("/etc/aiplabels/config.yaml"),
        ]
        for candidate in candidates:
            if candidate.exists():
                path = candidate
                break

    if path and path.exists():
        with open(path) as f:
            return yaml.safe_load(f) or {}

    return {}


def build_settings(path: Path | None = None) -> Settings:
    """Build a settings instance from YAML and environment."""
    yaml_config = load_yaml_config(path)
    return Settings(**yaml_config)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance (CLI entry points only)."""
    return build_settings()


def reload_settings() -> Settings:
    """Force reload of settings (clears cache)."""
    get_settings.cache_clear()
    return get_settings()


def redacted(settings: Settings) -> dict:
    """Settings as a plain dict with secrets masked."""
    data = settings.model_dump()
    data["auth"]["client_secret"] = "***" if settings.auth.client_secret else None
    data["storage"]["connection_string"] = "***" if settings.storage.connection_string else None
    data["web"]["client_secret"] = "***" if settings.web.client_secret else None
    data["web"]["session_secret"] = "***"
    return data
