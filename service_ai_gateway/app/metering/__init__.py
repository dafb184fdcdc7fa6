"""
Credit metering: price table, operation classification and the usage ledger.
"""

from .ledger import UsageMeteringLedger
from .pricing import PRICE_TABLE, classify_operation, credits_for

__all__ = ["UsageMeteringLedger", "PRICE_TABLE", "classify_operation", "credits_for"]
