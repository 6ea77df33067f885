"""
Feature modules live under this package.

Keep module boundaries clean: each module owns its models, ledger service and
API blueprint, while reusing platform primitives (RBAC, audit, hashing, DB session).
"""
