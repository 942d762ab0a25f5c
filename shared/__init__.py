"""
Shared utilities for the Entitlement Sync service.

This package aggregates common building blocks consumed by the service:

- config: Service configuration via pydantic-settings
- logging: Structured logging with trace correlation
- metrics: Prometheus metrics helpers
- tracing: OpenTelemetry tracing config
- observability: Logging/metrics/tracing facade
- errors: Canonical error types and responses
- retry: Retry decorators for transient store failures
- base_service: FastAPI application scaffolding

Do not import from service packages into shared/.
"""
