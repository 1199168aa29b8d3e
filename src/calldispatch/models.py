"""
Import every ORM module so ``Base.metadata`` knows all tables.
"""

from calldispatch.billing.models import UserCallUsage
from calldispatch.jobs.models import CallAssignment, CallHistory, CallJob, CallRetry
from calldispatch.providers.models import (
    Provider,
    ProviderAssistant,
    ProviderAvailability,
    ProviderPhoneNumber,
)
from calldispatch.shared.database import Base

__all__ = [
    "Base",
    "CallAssignment",
    "CallHistory",
    "CallJob",
    "CallRetry",
    "Provider",
    "ProviderAssistant",
    "ProviderAvailability",
    "ProviderPhoneNumber",
    "UserCallUsage",
]
