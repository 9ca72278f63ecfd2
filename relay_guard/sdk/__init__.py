"""
SDK for relay_guard.

Adapters between the resilience core and external services.
"""

from .components import Components, build_components
from .http_delivery import HttpDelivery
from .openai_client import GatedOpenAI

__all__ = ["Components", "GatedOpenAI", "HttpDelivery", "build_components"]
