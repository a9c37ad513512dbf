"""
Shared utilities for the rule resolution service.

This package aggregates common building blocks:

- config: Service configuration via pydantic-settings
- logging: Structured logging with correlation context
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Bounded retry for store calls
- circuit_breaker: Protection for the rule document store
- test_helpers: Factories for rules and contexts used by the test suites

Do not import from service_* packages into shared/.
"""
