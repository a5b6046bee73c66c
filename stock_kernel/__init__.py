"""
Stock Kernel - testing-material inventory core

A two-ledger stock system with:
- Outlet and testing-center ledgers per product
- Serial-level status and append-only transfer history
- Testing request lifecycle (create, accept, result, return, cancel)
- Row-locked, all-or-nothing workflow transitions
"""

__version__ = "0.1.0"
