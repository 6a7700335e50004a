"""
M365 Identity Risk Engine
=========================
Read-only identity compromise assessment for Microsoft 365 accounts.
Collects an account's sign-in, mailbox, consent and directory telemetry,
evaluates a catalog of indicators of compromise, and produces an
explainable, re-scorable risk report per account.

WARNING: This tool operates in STRICT READ-ONLY mode.
         No write operations will be performed against the tenant.
"""

__version__ = "1.0.0"
__mode__ = "READ-ONLY"
