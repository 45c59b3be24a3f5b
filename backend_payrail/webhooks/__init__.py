"""
Webhook outbox delivery with HMAC signatures and fixed-schedule retries.
"""
