"""
Retail Ledger

A minimal retail-banking core: KYC-gated account onboarding and a
transaction ledger that keeps a running balance per account with
overdraft protection. All monetary values use Decimal.
"""

__version__ = "1.0.0"
