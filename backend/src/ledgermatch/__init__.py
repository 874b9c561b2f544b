"""ledgermatch - bank transaction reconciliation and pattern learning.

Matches incoming bank transactions against invoices, payments, bills,
expenses and expected receipts of a tenant, decides between auto-match,
suggestion and unmatched, and learns tenant-scoped patterns from user
confirmations and rejections.
"""

__version__ = "0.1.0"
