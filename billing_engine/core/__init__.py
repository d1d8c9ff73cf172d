"""
Core modules for the billing engine.

This package contains the billing run, the monthly scheduler and the payment
failure taxonomy.
"""
