"""Iris gateway node.

Untrusted gateway nodes drain an on-ledger command queue, fetch content from
IPFS, recover staged encrypted data through threshold proxy re-encryption, and
report completion back to the ledger where it is applied idempotently.
"""

__version__ = "0.3.0"
