# payments/__init__.py
# ============================================================================
# FATFOOD BACKEND — PAYMENTS MODULE
# ============================================================================
# Provider adapters and the reconciliation service they funnel into
# ============================================================================

from payments.reconciliation import ReconciliationService
from payments.base import PaymentAdapter
from payments.vnpay import VnpayAdapter
from payments.paypal import PaypalAdapter
from payments.stripe_checkout import StripeAdapter
from payments.vietqr import VietQrAdapter
from payments.cod import CodAdapter

__all__ = [
    "ReconciliationService",
    "PaymentAdapter",
    "VnpayAdapter",
    "PaypalAdapter",
    "StripeAdapter",
    "VietQrAdapter",
    "CodAdapter",
]
