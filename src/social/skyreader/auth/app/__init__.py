"""
Skyreader Auth Application Layer

This package implements the web application layer using the aiohttp
framework.

Key Components:
- cli.py: Entry point for running the application
- server.py: Application factory, middleware and shared resources
- config.py: Configuration management using Pydantic settings
- handlers/: Request handlers for the login flow, XRPC proxy and probes
- tasks.py: Background sweep and health monitoring
- metrics.py: Metrics backend abstraction
- ratelimit.py: Per-identity fixed window rate limiting

It provides the following main endpoints:
- Client metadata (/.well-known/client-metadata)
- Login flow endpoints (/api/auth/*)
- XRPC proxy endpoints (/xrpc/*)
- Internal probes (/internal/*)
"""
