"""gateway/ -- Per-request orchestration of verifier, session guard, ledger, and router.

Layer rule: gateway/ may import from core/, accounts/, ledger/, routing/, and
cache/. It does NOT import from api/.
"""
