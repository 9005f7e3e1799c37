import os
from typing import Dict, List

DEFAULT_EVENT_LOG_FILE = "events.jsonl"

# Context budget, in estimated tokens.
DEFAULT_CONTEXT_BUDGET_TOKENS = 2400
CHARS_PER_TOKEN = 4
MIN_SECTION_TOKENS = 24
DEFAULT_CONTEXT_CACHE_TTL = 600

DEFAULT_SUMMARY_COMPACT_CHARS = 4000
DEFAULT_SUMMARY_KEEP_TURNS = 6
DEFAULT_DIGEST_MAX_CHARS = 2400
DEFAULT_TURN_NOTE_LENGTH = 160

DEFAULT_HTTP_TIMEOUT = 30
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 1024
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_BASE_DELAY = 0.5
DEFAULT_RETRY_JITTER = 0.2
DEFAULT_MAX_RETRY_DELAY = 8.0
DEFAULT_MAX_REPROMPTS = 1

DEFAULT_OBJECTIVE_MAX = 4
DEFAULT_OBJECTIVE_WORKERS = 2

ANTHROPIC_API_VERSION = "2023-06-01"

DEFAULT_MODEL_BY_PROVIDER: Dict[str, str] = {
    "anthropic": "claude-sonnet-4-5",
    "openai": "gpt-5.1",
    "groq": "moonshotai/kimi-k2-instruct-0905",
    "gemini-openai-compat": "gemini-3-flash-preview",
}

DEFAULT_BASE_URL_BY_PROVIDER: Dict[str, str] = {
    "anthropic": "https://api.anthropic.com",
    "openai": "https://api.openai.com/v1",
    "groq": "https://api.groq.com/openai/v1",
    "gemini-openai-compat": "https://generativelanguage.googleapis.com/v1beta/openai/",
}

ADAPTER_KIND_BY_PROVIDER: Dict[str, str] = {
    "anthropic": "anthropic",
    "openai": "openai-compat",
    "groq": "openai-compat",
    "gemini-openai-compat": "openai-compat",
}

ROLE_ONBOARDING = "onboarding"
ROLE_COUNSELOR = "counselor"
ROLE_PARSER = "parser"
ROLE_SECRETARY = "secretary"
ROLE_OBJECTIVES = "objectives"
ROLE_SUMMARIZER = "summarizer"

SUPPORTED_ROLES = [
    ROLE_ONBOARDING,
    ROLE_COUNSELOR,
    ROLE_PARSER,
    ROLE_SECRETARY,
    ROLE_OBJECTIVES,
    ROLE_SUMMARIZER,
]

# role (or "role:tier") -> ordered vendors, first is preferred
DEFAULT_ROLE_PROVIDER_ORDER: Dict[str, List[str]] = {
    ROLE_COUNSELOR: ["anthropic", "openai"],
    f"{ROLE_COUNSELOR}:free": ["groq", "anthropic"],
    ROLE_ONBOARDING: ["anthropic", "groq"],
    ROLE_PARSER: ["groq", "openai"],
    ROLE_SECRETARY: ["groq", "openai"],
    ROLE_OBJECTIVES: ["anthropic", "openai"],
    ROLE_SUMMARIZER: ["openai", "anthropic"],
}

# role (or "role:tier") -> vendor -> model, when the vendor default is not wanted
DEFAULT_ROLE_MODELS: Dict[str, Dict[str, str]] = {
    f"{ROLE_COUNSELOR}:paid": {"anthropic": "claude-opus-4-5"},
    ROLE_OBJECTIVES: {"anthropic": "claude-haiku-4-5", "openai": "gpt-5-mini"},
    ROLE_SUMMARIZER: {"openai": "gpt-5-mini", "anthropic": "claude-haiku-4-5"},
    ROLE_PARSER: {"openai": "gpt-5-mini"},
    ROLE_SECRETARY: {"openai": "gpt-5-mini"},
}

DEFAULT_ROLE_TEMPERATURE: Dict[str, float] = {
    ROLE_PARSER: 0.1,
    ROLE_SECRETARY: 0.3,
    ROLE_OBJECTIVES: 0.4,
    ROLE_SUMMARIZER: 0.3,
}

DEFAULT_ROLE_MAX_TOKENS: Dict[str, int] = {
    ROLE_PARSER: 500,
    ROLE_SECRETARY: 800,
    ROLE_OBJECTIVES: 400,
    ROLE_SUMMARIZER: 800,
}

TIER_FREE = "free"
TIER_PAID = "paid"

DEFAULT_TIER_MESSAGE_LIMITS: Dict[str, int] = {
    TIER_FREE: 20,
    TIER_PAID: 500,
}

DEFAULT_SECRETARY_TIERS: List[str] = [TIER_PAID]


def route_env_key(role: str) -> str:
    """COUNSELOR_ROUTE_<ROLE>[_<TIER>], e.g. COUNSELOR_ROUTE_COUNSELOR_PAID."""
    return "COUNSELOR_ROUTE_" + role.replace(":", "_").upper()


def get_log_dir() -> str:
    """Return the directory for the engine event log.

    Defaults to ~/.counselor/logs, overridable via COUNSELOR_LOG_DIR.
    """
    base = os.environ.get("COUNSELOR_LOG_DIR")
    if not base or not str(base).strip():
        base = os.path.join(os.path.expanduser("~"), ".counselor", "logs")
    try:
        os.makedirs(base, exist_ok=True)
    except OSError:
        fallback = os.path.join(os.getcwd(), "logs")
        os.makedirs(fallback, exist_ok=True)
        return fallback
    return base
