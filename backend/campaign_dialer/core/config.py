"""
Configuration Management
Loads settings from YAML files and environment variables
"""
import yaml
import os
from pathlib import Path
from typing import Any, Dict, Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment"""

    environment: str = "development"
    debug: bool = True

    # API Settings
    api_prefix: str = "/api/v1"
    cors_origins: list[str] = ["http://localhost:3000"]

    # Redis / notification bus
    redis_url: str = "redis://localhost:6379"
    notification_channel: str = "dialer:notifications"

    # Supabase (task store + billing ledger)
    supabase_url: Optional[str] = None
    supabase_service_key: Optional[str] = None

    # Switch control (Asterisk Manager Interface)
    switch_provider: str = "ami"
    ami_host: str = "localhost"
    ami_port: int = 5038
    ami_username: str = "admin"
    ami_secret: str = ""

    # Dialer
    correlation_grace_seconds: float = 60.0
    default_currency: str = "USD"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


class ConfigManager:
    """Manages loading and merging configuration from multiple sources"""

    def __init__(self, env: Optional[str] = None, config_dir: Optional[Path] = None):
        self.env = env or os.getenv("ENVIRONMENT", "development")
        self.config_dir = config_dir or Path(__file__).parent.parent.parent / "config"
        self._config: Dict[str, Any] = {}
        self._load_config()

    def _load_config(self) -> None:
        """Load configuration files in order of precedence"""
        default_path = self.config_dir / "default.yaml"
        if default_path.exists():
            self._config = self._load_yaml(default_path)

        env_path = self.config_dir / f"{self.env}.yaml"
        if env_path.exists():
            env_config = self._load_yaml(env_path)
            self._deep_merge(self._config, env_config)

        self._substitute_env_vars(self._config)

    def _load_yaml(self, path: Path) -> Dict:
        """Load YAML file"""
        with open(path, 'r') as f:
            return yaml.safe_load(f) or {}

    def _substitute_env_vars(self, config: Dict) -> None:
        """Replace ${VAR_NAME} with environment variable values"""
        for key, value in config.items():
            if isinstance(value, dict):
                self._substitute_env_vars(value)
            elif isinstance(value, str) and value.startswith("${") and value.endswith("}"):
                env_var = value[2:-1]
                config[key] = os.getenv(env_var, value)

    def _deep_merge(self, base: Dict, override: Dict) -> None:
        """Recursively merge override into base"""
        for key, value in override.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                self._deep_merge(base[key], value)
            else:
                base[key] = value

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation
        Example: config.get("dialer.contexts.hold") -> "campaign-hold"
        """
        keys = key_path.split('.')
        value = self._config

        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default

        return value

    def get_context(self, name: str, **params: str) -> str:
        """
        Resolve a switch dialplan context name.

        Context templates may reference parameters, e.g.
        "ai-flow-{flow_id}" with flow_id="42" -> "ai-flow-42".
        """
        template = self.get(f"dialer.contexts.{name}")
        if template is None:
            template = DEFAULT_CONTEXTS[name]
        return template.format(**params)


# Used when no YAML file overrides a context
DEFAULT_CONTEXTS: Dict[str, str] = {
    "hold": "campaign-hold",
    "dtmf": "campaign-dtmf-{campaign_id}",
    "transfer": "campaign-transfer",
    "queue_hold": "campaign-queue-hold",
    "human_queue": "campaign-queue-{campaign_id}",
    "ai_flow": "ai-flow-{flow_id}",
    "local_outbound": "from-internal",
}


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Return the process-wide Settings instance"""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
