"""
Settlement: payment intents, the transfer monitor and the finality finalizer.
"""
