# src/iris/storage/__init__.py
"""
Gateway-side workers (off-ledger).

These modules talk to the local IPFS daemon and to the ledger:
- read the node's queues from ledger state,
- perform side effects (connect, fetch, pin),
- then submit signed reports that the ledger applies idempotently.
"""
