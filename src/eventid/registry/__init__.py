"""Read-only workspace configuration registry."""

from eventid.registry.workspaces import (
    IntegrationSnapshot,
    RegistrySnapshot,
    RuleSnapshot,
    SubscriptionSnapshot,
    WorkspaceRegistry,
    WorkspaceSnapshot,
)

__all__ = [
    "IntegrationSnapshot",
    "RegistrySnapshot",
    "RuleSnapshot",
    "SubscriptionSnapshot",
    "WorkspaceRegistry",
    "WorkspaceSnapshot",
]
