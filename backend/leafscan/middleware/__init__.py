"""
LeafScan Backend — Middleware Package
=======================================

Middleware Chain (order matters):
    Request → [Request ID] → [Logging] → [GZip] → [CORS] → Route Handler

    1. Request ID first: every later log line carries the correlation ID
    2. Logging: status and duration per request

Rate limiting is not middleware here: a throttled /analyze call is a 200
with `rateLimited: true`, decided inside the route by the usage tracker.
"""
