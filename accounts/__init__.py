"""accounts/ -- License-key accounts and session arbitration.

Layer rule: accounts/ imports only stdlib, third-party libraries, and core/.
It does NOT import from api/, gateway/, ledger/, routing/, or cache/.
ledger/ and gateway/ import from accounts/, not the other way around.
"""
