"""
Core domain primitives shared by every service: errors, money helpers, clock.
"""
