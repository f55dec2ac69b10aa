import os

__all__ = [
    "PG_DSN",
    "REDIS_URL",
    "LLM_BASE_URL",
    "LLM_API_KEY",
    "LLM_MODEL",
    "EMBEDDING_MODEL",
    "LLM_TIMEOUT_SECONDS",
    "RAG_MATCH_THRESHOLD",
    "RAG_MATCH_COUNT",
    "PENDING_OPERATION_TTL_SECONDS",
    "PENDING_OPERATION_RETENTION_SECONDS",
    "DEMO_USER_ID",
    "DEMO_USER_EMAIL",
    "EXPOSE_POLICY_REASONS",
    "AUDIT_QUERY_MAX_LIMIT",
    "AGENT_ID",
]


def env(name: str, default: str | None = None) -> str:
    v = os.getenv(name, default)
    if v is None:
        raise RuntimeError(f"{name} env var is required")
    return v


def env_bool(name: str, default: str) -> bool:
    return env(name, default).lower() in ("1", "true", "yes")


PG_DSN = env("PG_DSN")
REDIS_URL = env("REDIS_URL", "redis://redis:6379/0")

# Text generation / embeddings (OpenAI-compatible HTTP API)
LLM_BASE_URL = env("LLM_BASE_URL", "https://api.openai.com/v1")
LLM_API_KEY = env("LLM_API_KEY", "").strip('"')
LLM_MODEL = env("LLM_MODEL", "gpt-3.5-turbo")
EMBEDDING_MODEL = env("EMBEDDING_MODEL", "text-embedding-ada-002")
LLM_TIMEOUT_SECONDS = float(env("LLM_TIMEOUT_SECONDS", "20"))

# Context retrieval
RAG_MATCH_THRESHOLD = float(env("RAG_MATCH_THRESHOLD", "0.7"))
RAG_MATCH_COUNT = int(env("RAG_MATCH_COUNT", "5"))

# Pending operations: confirmation window and key retention
PENDING_OPERATION_TTL_SECONDS = int(env("PENDING_OPERATION_TTL_SECONDS", "3600"))
PENDING_OPERATION_RETENTION_SECONDS = int(env("PENDING_OPERATION_RETENTION_SECONDS", str(30 * 86400)))

# Envelope default actor (demo deployment)
DEMO_USER_ID = env("DEMO_USER_ID", "demo-user-123")
DEMO_USER_EMAIL = env("DEMO_USER_EMAIL", "demo@emr.com")

# Return policy reasons to callers on Forbidden (trusted clinical UI only)
EXPOSE_POLICY_REASONS = env_bool("EXPOSE_POLICY_REASONS", "true")

AUDIT_QUERY_MAX_LIMIT = int(env("AUDIT_QUERY_MAX_LIMIT", "500"))

# Recorded as actor_agent_id on AI-originated audit entries
AGENT_ID = env("AGENT_ID", "emr-assistant")
