"""
Telephony package: provider onboarding, number bindings, call routing and
conferencing webhook ingestion.

Keep package import side-effects to a minimum; wiring lives in ``module``.
"""

__all__ = [
    "config",
    "entities",
    "errors",
    "module",
]
