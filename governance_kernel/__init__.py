"""
Governance Kernel - construction payment governance state engine.

A milestone-driven payment system with:
- Fixed, role-gated milestone lifecycle
- Single-writer payment eligibility derivation
- Sticky human overrides (block, mark paid)
- Append-only, hash-chained audit trail
"""

__version__ = "0.1.0"
