"""
Wallet registration and ownership proof (nonce challenge + signature check).
"""
