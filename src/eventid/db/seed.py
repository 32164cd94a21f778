"""Sample workspace configuration for local development and tests.

Three workspaces with distinct framework/jurisdiction profiles, each wired
to all four platforms, subscribed to regulatory updates and scan
violations, with one rule per subscription.
"""

from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from eventid.db.models import AutomationRule, EventSubscription, PlatformIntegration, Workspace
from eventid.db.session import session_scope

logger = structlog.get_logger()

SAMPLE_WORKSPACES: list[dict[str, Any]] = [
    {
        "workspace_id": "ws_healthcare_app",
        "user_id": "user_123",
        "name": "Healthcare Application",
        "frameworks": ["HIPAA", "SOC2"],
        "jurisdiction": "US",
        "modules": ["DATABASE", "API", "AUTHENTICATION", "ENCRYPTION"],
        "github_repo": "yourorg/healthcare-app",
    },
    {
        "workspace_id": "ws_fintech_platform",
        "user_id": "user_456",
        "name": "FinTech Platform",
        "frameworks": ["PCI_DSS", "SOC2"],
        "jurisdiction": "US",
        "modules": ["PAYMENT_PROCESSING", "DATABASE", "API", "ENCRYPTION"],
        "github_repo": "yourorg/fintech-platform",
    },
    {
        "workspace_id": "ws_saas_product",
        "user_id": "user_789",
        "name": "SaaS Product",
        "frameworks": ["GDPR", "ISO27001"],
        "jurisdiction": "EU",
        "modules": ["DATABASE", "USER_INTERFACE", "API", "DATA_STORAGE"],
        "github_repo": "yourorg/saas-product",
    },
]

PLATFORM_ENDPOINTS: dict[str, str] = {
    "scraper": "http://scraper-platform:8080",
    "code": "http://code-platform:8080",
    "scan": "http://scan-platform:8080",
    "review": "http://review-platform:8080",
}


def sample_subscriptions(workspace_id: str) -> list[dict[str, Any]]:
    return [
        {
            "workspace_id": workspace_id,
            "event_type": "REGULATORY_UPDATE",
            "platform": "scraper",
            "filters": {"framework_in_workspace": True},
        },
        {
            "workspace_id": workspace_id,
            "event_type": "VIOLATION_FOUND",
            "platform": "scan",
            "filters": {},
        },
    ]


def sample_rules(workspace_id: str) -> list[dict[str, Any]]:
    return [
        {
            "workspace_id": workspace_id,
            "rule_name": "regulation_change_to_spec",
            "event_type": "REGULATORY_UPDATE",
            "priority": 10,
            "conditions": {"framework_in_workspace": True, "jurisdiction_matches_workspace": True},
            "actions": [
                {
                    "type": "emit_event",
                    "event_type": "SPEC_REQUESTED",
                    "platform": "code",
                    "payload": {"reason": "regulatory_update"},
                    "copy_fields": ["jurisdiction", "risk_context", "regulation"],
                },
                {
                    "type": "invoke_platform",
                    "platform": "scan",
                    "operation": "/scans",
                    "params": {"scope": "affected_modules"},
                },
            ],
        },
        {
            "workspace_id": workspace_id,
            "rule_name": "critical_violation_to_review",
            "event_type": "VIOLATION_FOUND",
            "priority": 20,
            "conditions": {"severity_at_least": "HIGH"},
            "actions": [
                {
                    "type": "emit_event",
                    "event_type": "REVIEW_REQUESTED",
                    "platform": "review",
                    "copy_fields": ["violation", "risk_context"],
                },
            ],
        },
    ]


async def seed_sample_data(session_factory: async_sessionmaker[AsyncSession]) -> int:
    """Insert the sample workspaces that do not exist yet; returns how many were added."""
    added = 0
    async with session_scope(session_factory) as db:
        existing = set((await db.scalars(select(Workspace.workspace_id))).all())
        for ws in SAMPLE_WORKSPACES:
            if ws["workspace_id"] in existing:
                continue
            db.add(Workspace(**ws, active=True, settings={}))
            await db.flush()
            for platform, endpoint in PLATFORM_ENDPOINTS.items():
                db.add(PlatformIntegration(
                    workspace_id=ws["workspace_id"],
                    platform=platform,
                    enabled=True,
                    configuration={"endpoint": endpoint},
                ))
            for sub in sample_subscriptions(ws["workspace_id"]):
                db.add(EventSubscription(**sub, enabled=True))
            for rule in sample_rules(ws["workspace_id"]):
                db.add(AutomationRule(**rule, enabled=True))
            added += 1
    logger.info("sample_data_seeded", workspaces_added=added)
    return added
