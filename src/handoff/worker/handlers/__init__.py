"""Job handlers for the Handoff worker.

- refund_payment: submit refund transfers to the payment rail and record the outcome
"""

from handoff.worker.handlers.refund_payment import make_refund_payment_handler

__all__ = ["make_refund_payment_handler"]
