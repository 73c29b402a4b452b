"""
Config -> Kernel Bridges.

Converts GovernanceSettings into kernel inputs.  Lives in governance_config
(the producer) because the kernel must NEVER import governance_config.

Usage:
    from governance_config import get_active_settings
    from governance_config.bridges import build_governance_policy, init_engine_from_settings

    settings = get_active_settings()
    init_engine_from_settings(settings)
    policy = build_governance_policy(settings)
    orchestrator = GovernanceOrchestrator(session, policy=policy)
"""

from __future__ import annotations

from typing import Any

from sqlalchemy.engine import Engine

from governance_config.schema import GovernanceSettings
from governance_kernel.db.engine import init_engine_from_url
from governance_kernel.domain.policy import GovernancePolicy


def build_governance_policy(settings: GovernanceSettings) -> GovernancePolicy:
    return GovernancePolicy(
        due_soon_threshold_days=settings.due_soon_threshold_days,
        urgent_threshold_days=settings.urgent_threshold_days,
        max_evidence_file_bytes=settings.max_evidence_file_bytes,
        max_transaction_retries=settings.max_transaction_retries,
        max_recalculation_retries=settings.max_recalculation_retries,
        recent_events_limit=settings.recent_events_limit,
        audit_page_limit=settings.audit_page_limit,
    )


def init_engine_from_settings(settings: GovernanceSettings, **engine_kwargs: Any) -> Engine:
    """Initialize the kernel engine from ``database_url``; pool options pass through."""
    if not settings.database_url:
        raise ValueError("database_url is not configured (set GOVERNANCE_DATABASE_URL)")
    return init_engine_from_url(settings.database_url, **engine_kwargs)
