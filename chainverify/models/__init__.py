"""
Database models
"""
from chainverify.models.crypto_payment import CryptoPayment, CryptoPaymentVerification
from chainverify.models.subscription import Subscription

__all__ = [
    "CryptoPayment",
    "CryptoPaymentVerification",
    "Subscription",
]
