"""
Configuration schema (``governance_config.schema``).

Frozen dataclass describing the runtime settings of the governance kernel.
Parsed by ``governance_config.loader``; converted to the kernel's
``GovernancePolicy`` by ``governance_config.bridges``.
"""

from __future__ import annotations

from dataclasses import dataclass, fields

MIB = 1024 * 1024


@dataclass(frozen=True)
class GovernanceSettings:
    """
    Runtime settings.

    Invariants:
        - All integer settings are non-negative; retry bounds are >= 1.
        - urgent_threshold_days <= due_soon_threshold_days.
    """

    due_soon_threshold_days: int = 7
    urgent_threshold_days: int = 3
    max_evidence_file_bytes: int = 10 * MIB
    max_transaction_retries: int = 3
    max_recalculation_retries: int = 3
    recent_events_limit: int = 10
    audit_page_limit: int = 100
    database_url: str | None = None
    checksum: str = ""

    def __post_init__(self) -> None:
        for f in fields(self):
            if f.type != "int":
                continue
            value = getattr(self, f.name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"{f.name} must be an integer, got {value!r}")
            if value < 0:
                raise ValueError(f"{f.name} must be non-negative, got {value}")
        if self.max_transaction_retries < 1:
            raise ValueError("max_transaction_retries must be at least 1")
        if self.max_recalculation_retries < 1:
            raise ValueError("max_recalculation_retries must be at least 1")
        if self.urgent_threshold_days > self.due_soon_threshold_days:
            raise ValueError(
                "urgent_threshold_days cannot exceed due_soon_threshold_days"
            )


SETTING_NAMES: tuple[str, ...] = tuple(
    f.name for f in fields(GovernanceSettings) if f.name != "checksum"
)
