"""
Delegation-of-authority module.

- Administrators issue delegations against a protocol version (Pending)
- Only the delegated user signs: Accepted or Declined
- Only a site/trial administrator revokes an Accepted delegation
- Every transition is hash-chained and written to the audit trail
"""
