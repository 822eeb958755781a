"""
Arena Service - tournament registration and payments

Responsibilities:
- Tournament lifecycle (draft -> open -> full -> ongoing -> completed, or cancelled)
- Periodic sweep advancing time-driven tournament status
- Capacity-gated team registration
- Entry-fee payments through a signed gateway protocol (initiate, verify, refund, webhook)
"""
