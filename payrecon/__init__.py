#Package root for the payment claim reconciliation engine
"""
Payment Claim Reconciliation Engine

This package contains the modules for:

- Loading loosely structured merchant Excel exports
- Mapping, validating and deduplicating merchant transactions
- Matching agent claims against the merchant ground truth
- Running, persisting and maintaining reconciliation sessions
- Turning bill screenshots into candidate claims (OCR client)

Subpackages:
- core
- cleaning
- engines
- state
- services

"""

#Subpackages exposed at the package level
from . import core, cleaning, engines, state, services
__all__ = [
    "core",
    "cleaning",
    "engines",
    "state",
    "services",
]
