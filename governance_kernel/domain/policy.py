"""
Runtime governance policy (``governance_kernel.domain.policy``).

Thresholds and bounds the kernel needs at runtime.  The kernel never reads
configuration files; ``governance_config.bridges.build_governance_policy``
produces this value from the active settings.
"""

from __future__ import annotations

from dataclasses import dataclass

from governance_kernel.domain.indicator import DEFAULT_DUE_SOON_DAYS, DEFAULT_URGENT_DAYS

DEFAULT_MAX_EVIDENCE_FILE_BYTES = 10 * 1024 * 1024


@dataclass(frozen=True)
class GovernancePolicy:
    due_soon_threshold_days: int = DEFAULT_DUE_SOON_DAYS
    urgent_threshold_days: int = DEFAULT_URGENT_DAYS
    max_evidence_file_bytes: int = DEFAULT_MAX_EVIDENCE_FILE_BYTES
    max_transaction_retries: int = 3
    max_recalculation_retries: int = 3
    recent_events_limit: int = 10
    audit_page_limit: int = 100

    def __post_init__(self) -> None:
        if self.urgent_threshold_days > self.due_soon_threshold_days:
            raise ValueError(
                "urgent_threshold_days cannot exceed due_soon_threshold_days"
            )
        for name in (
            "due_soon_threshold_days",
            "urgent_threshold_days",
            "max_evidence_file_bytes",
            "max_transaction_retries",
            "max_recalculation_retries",
            "recent_events_limit",
            "audit_page_limit",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be non-negative")
        if self.max_transaction_retries < 1 or self.max_recalculation_retries < 1:
            raise ValueError("retry bounds must allow at least one attempt")
