"""
CRM Backend

Customers, products and the purchase ledger that keeps item pricing,
purchase totals and customer lifetime statistics consistent.
"""

__version__ = "1.0.0"
