"""
Core package — cross-cutting concerns.

Modules:
    config          — environment variables & settings
    logging_config  — structured JSON logging with request context
    errors          — exception hierarchy & handlers
    middleware      — request id, timing, access log
    health          — health check aggregation
"""
