"""Handoff - order delivery, return and refund lifecycle service.

Tracks a physical good from order confirmation through OTP-verified
delivery, and optionally through a return pickup and manufacturer refund.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
