"""
Vibe Dynamic Pricing Package

A context-aware dynamic pricing rule engine. Compiles stored pricing rules into
an index, resolves the rule that applies to a product for the visitor's referrer
and payment method, and decides cart-level payment gateway eligibility.
"""

__version__ = "2.0.0"
