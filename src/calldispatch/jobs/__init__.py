"""
Call job queue: models, state machine and persistence gateway.

Keep package import side-effects to a minimum to avoid circular imports.
"""

__all__ = [
    "models",
    "store",
    "service",
    "router",
]
