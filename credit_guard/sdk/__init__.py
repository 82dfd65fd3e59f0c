"""
SDK for credit_guard.

Provides metered image generation and payment processor adapters.
"""

from .openai_client import GeneratedImage, MeteredImageClient, OpenAIImageGenerator
from .stripe_client import StripePayments

__all__ = ["GeneratedImage", "MeteredImageClient", "OpenAIImageGenerator", "StripePayments"]
