"""
Payouts: request and approval workflow, unsigned transaction generation,
signed submission, broadcast and reconciliation.
"""
