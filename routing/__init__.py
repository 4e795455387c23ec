"""routing/ -- Action-name routing and category handlers.

Layer rule: routing/ imports only stdlib, third-party libraries, core/,
accounts/, ledger/ (built-in handlers read them), and cache/. It does NOT
import from api/ or gateway/. The router itself depends only on the
CategoryHandler contract in routing/handlers.py.
"""
