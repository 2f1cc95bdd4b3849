"""
Shared utilities for the RPC cache proxy.

This package aggregates common building blocks consumed by the service:

- config: Proxy configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Iterative retry with exponential backoff
- base_service: FastAPI service skeleton (health, metrics, error handlers)

Do not import from service_* packages into shared/.
"""
