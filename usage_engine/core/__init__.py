"""
Core modules for the usage engine.

This package contains idempotency, validation, persistence, rate limiting,
collection orchestration, cycle aggregation and quality scoring.
"""
