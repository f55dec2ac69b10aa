"""toolgate — confirmation and authorization gateway for EMR co-pilot tools."""

__all__ = [
    "assistant",
    "audit",
    "errors",
    "identity",
    "llm_client",
    "logging",
    "metrics",
    "models",
    "orchestrator",
    "pending_store",
    "policy",
    "registry",
    "retrieval",
    "settings",
    "store",
    "tools",
    "workflows",
]
