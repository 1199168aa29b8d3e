"""
Call dispatch and orchestration engine.

Queues outbound voice-call jobs and executes them through pluggable
third-party call providers.
"""

__version__ = "0.1.0"
