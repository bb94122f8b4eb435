"""
Shared utilities for Streampulse services.

- config: Service configuration via pydantic-settings
- logging: Structured logging with correlation context
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- base_service: FastAPI service shell

Do not import from service packages into shared/.
"""
