"""
Core modules for relay-guard.

This package contains budget admission control, connection routing,
the durable retry queue and the scheduler that drives them.
"""
