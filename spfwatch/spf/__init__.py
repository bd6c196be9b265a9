"""
SPF core for SPF Watch.

Provides SPF record parsing and lookup-cost accounting, ESP stability
classification, include flattening with CIDR consolidation, and include
drift monitoring with auto-update gating.
"""
