"""ledger/ -- Credit pricing, reservation, and the transaction journal.

Layer rule: ledger/ imports only stdlib, third-party libraries, core/, and
accounts/ (for the accounts table it debits). It does NOT import from api/,
gateway/, routing/, or cache/.
"""
