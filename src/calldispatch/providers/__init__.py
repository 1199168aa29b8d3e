"""
Provider registry, availability tracking and adapters.

Do not import factory/adapters here.
"""

__all__ = [
    "interface",
    "models",
    "repository",
    "availability",
    "factory",
    "router",
]
