"""Access policy for public and private rooms."""
from .access import AccessDecision, AccessOutcome, AccessPolicy

__all__ = ["AccessDecision", "AccessOutcome", "AccessPolicy"]
