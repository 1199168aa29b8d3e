"""Concrete call provider adapters."""

from calldispatch.providers.adapters.mock import MockCallProvider
from calldispatch.providers.adapters.synthflow import SynthflowAdapter
from calldispatch.providers.adapters.vapi import VapiAdapter

__all__ = ["MockCallProvider", "SynthflowAdapter", "VapiAdapter"]
