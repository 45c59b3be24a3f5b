"""
API server package — FastAPI app exposing intents, payouts, wallets and ledger views.
"""
