"""
Payment providers for the billing engine.

Implementations of the payment provider capability charged by a billing run.
"""

from .simulated import SimulatedPaymentProvider

__all__ = ["SimulatedPaymentProvider"]
