import os
import json
from dataclasses import dataclass, asdict, field
from typing import List, Optional, Dict, Any
from .constants import (
    ADAPTER_KIND_BY_PROVIDER,
    DEFAULT_BASE_URL_BY_PROVIDER,
    DEFAULT_CONTEXT_BUDGET_TOKENS,
    DEFAULT_CONTEXT_CACHE_TTL,
    DEFAULT_DIGEST_MAX_CHARS,
    DEFAULT_HTTP_TIMEOUT,
    DEFAULT_MAX_REPROMPTS,
    DEFAULT_MAX_RETRY_DELAY,
    DEFAULT_MAX_TOKENS,
    DEFAULT_MODEL_BY_PROVIDER,
    DEFAULT_OBJECTIVE_MAX,
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_RETRY_BASE_DELAY,
    DEFAULT_RETRY_JITTER,
    DEFAULT_ROLE_MAX_TOKENS,
    DEFAULT_ROLE_MODELS,
    DEFAULT_ROLE_PROVIDER_ORDER,
    DEFAULT_ROLE_TEMPERATURE,
    DEFAULT_SECRETARY_TIERS,
    DEFAULT_SUMMARY_COMPACT_CHARS,
    DEFAULT_SUMMARY_KEEP_TURNS,
    DEFAULT_TEMPERATURE,
    DEFAULT_TIER_MESSAGE_LIMITS,
    TIER_FREE,
    TIER_PAID,
    get_log_dir,
    route_env_key,
)
from .errors import ConfigurationError


@dataclass
class ProviderConfig:
    """Configuration for a single LLM vendor."""
    name: str
    kind: str
    base_url: str
    api_key: Optional[str] = None
    model: Optional[str] = None
    extra_headers: Optional[Dict[str, str]] = None
    extra_params: Optional[Dict[str, Any]] = None
    timeout: float = DEFAULT_HTTP_TIMEOUT

    def is_available(self) -> bool:
        return bool(self.api_key)

    def to_public_dict(self) -> Dict[str, Any]:
        """Export config with sensitive data redacted."""
        result = asdict(self)
        if result.get("api_key"):
            result["api_key"] = "REDACTED"
        return result


@dataclass
class RoleRoute:
    """Ordered vendor preference for one role. The first vendor is preferred, the rest are fallbacks."""
    role: str
    vendors: List[str]
    models: Dict[str, str] = field(default_factory=dict)
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: Optional[int] = DEFAULT_MAX_TOKENS

    def model_for(self, vendor: str, provider: Optional[ProviderConfig] = None) -> Optional[str]:
        if vendor in self.models:
            return self.models[vendor]
        if provider is not None and provider.model:
            return provider.model
        return DEFAULT_MODEL_BY_PROVIDER.get(vendor)


@dataclass
class RetryPolicy:
    attempts: int = DEFAULT_RETRY_ATTEMPTS
    base_delay: float = DEFAULT_RETRY_BASE_DELAY
    jitter: float = DEFAULT_RETRY_JITTER
    max_delay: float = DEFAULT_MAX_RETRY_DELAY

    def __post_init__(self):
        if self.attempts < 1:
            self.attempts = 1
        if not 0 <= self.jitter < 1:
            self.jitter = DEFAULT_RETRY_JITTER

    def delay_for(self, attempt: int, noise: float = 0.0) -> float:
        """Backoff before retry number ``attempt`` (1-based); ``noise`` is in [-1, 1]."""
        base = self.base_delay * (2 ** (attempt - 1))
        return min(base * (1 + self.jitter * noise), self.max_delay)


@dataclass
class ContextLimits:
    budget_tokens: int = DEFAULT_CONTEXT_BUDGET_TOKENS
    cache_ttl: int = DEFAULT_CONTEXT_CACHE_TTL
    summary_compact_chars: int = DEFAULT_SUMMARY_COMPACT_CHARS
    summary_keep_turns: int = DEFAULT_SUMMARY_KEEP_TURNS
    digest_max_chars: int = DEFAULT_DIGEST_MAX_CHARS


@dataclass
class EngineConfig:
    """Complete runtime configuration for the counselor engine."""
    providers: Dict[str, ProviderConfig]
    routes: Dict[str, RoleRoute]
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    context: ContextLimits = field(default_factory=ContextLimits)
    max_reprompts: int = DEFAULT_MAX_REPROMPTS
    objective_max: int = DEFAULT_OBJECTIVE_MAX
    secretary_tiers: List[str] = field(default_factory=lambda: list(DEFAULT_SECRETARY_TIERS))
    disabled_tools: List[str] = field(default_factory=list)
    tier_message_limits: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_TIER_MESSAGE_LIMITS))
    log_dir: Optional[str] = None

    def route_for(self, role: str, tier: Optional[str] = None) -> RoleRoute:
        """Pure lookup: ``role:tier`` wins over ``role``."""
        if tier:
            tiered = self.routes.get(f"{role}:{tier}")
            if tiered is not None:
                return tiered
        route = self.routes.get(role)
        if route is None:
            raise ConfigurationError(f"No provider route configured for role '{role}'", {"role": role, "tier": tier})
        return route

    def to_public_dict(self) -> Dict[str, Any]:
        """Export configuration with sensitive data redacted."""
        return {
            "providers": {name: p.to_public_dict() for name, p in self.providers.items()},
            "routes": {name: asdict(r) for name, r in self.routes.items()},
            "retry": asdict(self.retry),
            "context": asdict(self.context),
            "max_reprompts": self.max_reprompts,
            "objective_max": self.objective_max,
            "secretary_tiers": self.secretary_tiers,
            "disabled_tools": self.disabled_tools,
            "tier_message_limits": self.tier_message_limits,
            "log_dir": self.log_dir,
        }

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_public_dict(), indent=2)


class ConfigurationFactory:
    """Factory for creating configuration objects with proper validation."""

    @staticmethod
    def _get_env(key: str, default: Optional[str] = None) -> Optional[str]:
        """Get environment variable value."""
        return os.environ.get(key, default)

    @staticmethod
    def _get_env_int(key: str, default: int) -> int:
        """Get integer environment variable."""
        try:
            return int(os.environ.get(key, str(default)))
        except (ValueError, TypeError):
            return default

    @staticmethod
    def _get_env_float(key: str, default: float) -> float:
        """Get float environment variable."""
        try:
            return float(os.environ.get(key, str(default)))
        except (ValueError, TypeError):
            return default

    @classmethod
    def _get_env_list(cls, key: str, default: List[str]) -> List[str]:
        env_value = cls._get_env(key)
        if env_value is None:
            return list(default)
        return [p.strip() for p in env_value.split(",") if p.strip()]

    @classmethod
    def _provider(cls, name: str, env_prefix: str, timeout: float) -> ProviderConfig:
        return ProviderConfig(
            name=name,
            kind=ADAPTER_KIND_BY_PROVIDER[name],
            base_url=cls._get_env(f"{env_prefix}_BASE_URL", DEFAULT_BASE_URL_BY_PROVIDER[name]),
            api_key=cls._get_env(f"{env_prefix}_API_KEY"),
            model=cls._get_env(f"{env_prefix}_MODEL", DEFAULT_MODEL_BY_PROVIDER[name]),
            timeout=timeout,
        )

    @classmethod
    def create_provider_configs(cls) -> Dict[str, ProviderConfig]:
        """Create provider configurations from environment."""
        timeout = cls._get_env_float("COUNSELOR_HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT)
        return {
            "anthropic": cls._provider("anthropic", "ANTHROPIC", timeout),
            "openai": cls._provider("openai", "OPENAI", timeout),
            "groq": cls._provider("groq", "GROQ", timeout),
            "gemini-openai-compat": cls._provider("gemini-openai-compat", "GEMINI", timeout),
        }

    @classmethod
    def create_routes(cls, providers: Dict[str, ProviderConfig]) -> Dict[str, RoleRoute]:
        """Role routes with COUNSELOR_ROUTE_<ROLE>[_<TIER>] and COUNSELOR_PROVIDER overrides."""
        temperature = cls._get_env_float("COUNSELOR_TEMPERATURE", DEFAULT_TEMPERATURE)
        max_tokens = cls._get_env_int("COUNSELOR_MAX_TOKENS", DEFAULT_MAX_TOKENS) or None
        forced = (cls._get_env("COUNSELOR_PROVIDER") or "").strip().lower()
        forced_model = cls._get_env("COUNSELOR_MODEL")

        keys = list(DEFAULT_ROLE_PROVIDER_ORDER) + [k for k in DEFAULT_ROLE_MODELS if k not in DEFAULT_ROLE_PROVIDER_ORDER]
        routes: Dict[str, RoleRoute] = {}
        for key in keys:
            base_role = key.split(":", 1)[0]
            default_order = DEFAULT_ROLE_PROVIDER_ORDER.get(key) or DEFAULT_ROLE_PROVIDER_ORDER[base_role]
            vendors = cls._get_env_list(route_env_key(key), default_order)
            if forced and forced in providers:
                vendors = [forced]
            unknown = [v for v in vendors if v not in providers]
            if unknown:
                raise ConfigurationError(
                    f"Route '{key}' names unknown providers: {', '.join(unknown)}",
                    {"route": key, "unknown": unknown},
                )
            models = dict(DEFAULT_ROLE_MODELS.get(key) or DEFAULT_ROLE_MODELS.get(base_role) or {})
            if forced_model:
                models = {v: forced_model for v in vendors}
            routes[key] = RoleRoute(
                role=base_role,
                vendors=vendors,
                models=models,
                temperature=DEFAULT_ROLE_TEMPERATURE.get(base_role, temperature),
                max_tokens=DEFAULT_ROLE_MAX_TOKENS.get(base_role, max_tokens),
            )
        return routes

    @classmethod
    def create_retry_policy(cls) -> RetryPolicy:
        return RetryPolicy(
            attempts=cls._get_env_int("COUNSELOR_RETRY_ATTEMPTS", DEFAULT_RETRY_ATTEMPTS),
            base_delay=cls._get_env_float("COUNSELOR_RETRY_BASE_DELAY", DEFAULT_RETRY_BASE_DELAY),
            jitter=cls._get_env_float("COUNSELOR_RETRY_JITTER", DEFAULT_RETRY_JITTER),
            max_delay=cls._get_env_float("COUNSELOR_MAX_RETRY_DELAY", DEFAULT_MAX_RETRY_DELAY),
        )

    @classmethod
    def create_context_limits(cls) -> ContextLimits:
        return ContextLimits(
            budget_tokens=cls._get_env_int("COUNSELOR_CONTEXT_BUDGET", DEFAULT_CONTEXT_BUDGET_TOKENS),
            cache_ttl=cls._get_env_int("COUNSELOR_CONTEXT_CACHE_TTL", DEFAULT_CONTEXT_CACHE_TTL),
            summary_compact_chars=cls._get_env_int("COUNSELOR_SUMMARY_COMPACT_CHARS", DEFAULT_SUMMARY_COMPACT_CHARS),
            summary_keep_turns=cls._get_env_int("COUNSELOR_SUMMARY_KEEP_TURNS", DEFAULT_SUMMARY_KEEP_TURNS),
            digest_max_chars=cls._get_env_int("COUNSELOR_DIGEST_MAX_CHARS", DEFAULT_DIGEST_MAX_CHARS),
        )

    @classmethod
    def create_engine_config(cls) -> EngineConfig:
        """Create complete engine configuration."""
        providers = cls.create_provider_configs()
        return EngineConfig(
            providers=providers,
            routes=cls.create_routes(providers),
            retry=cls.create_retry_policy(),
            context=cls.create_context_limits(),
            max_reprompts=cls._get_env_int("COUNSELOR_MAX_REPROMPTS", DEFAULT_MAX_REPROMPTS),
            objective_max=cls._get_env_int("COUNSELOR_OBJECTIVE_MAX", DEFAULT_OBJECTIVE_MAX),
            secretary_tiers=cls._get_env_list("COUNSELOR_SECRETARY_TIERS", DEFAULT_SECRETARY_TIERS),
            disabled_tools=cls._get_env_list("COUNSELOR_DISABLED_TOOLS", []),
            tier_message_limits={
                TIER_FREE: cls._get_env_int("COUNSELOR_FREE_MESSAGE_LIMIT", DEFAULT_TIER_MESSAGE_LIMITS[TIER_FREE]),
                TIER_PAID: cls._get_env_int("COUNSELOR_PAID_MESSAGE_LIMIT", DEFAULT_TIER_MESSAGE_LIMITS[TIER_PAID]),
            },
            log_dir=cls._get_env("COUNSELOR_LOG_DIR") or get_log_dir(),
        )


def load_engine_config() -> EngineConfig:
    return ConfigurationFactory.create_engine_config()
