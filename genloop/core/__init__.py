"""
Core modules for genloop.

This package contains the generation pipeline: retrying transport, quality
gate, corrective retry loop, batch orchestration, cost ledger and storage
quota enforcement.
"""
