# Middleware package init
"""
SIHA Backend — Middleware Package
===================================

Middleware Chain:
    Request → [Request ID] → [Logging] → [GZip] → [CORS] → Route Handler

    1. Request ID: assigns the correlation ID used by every log line
    2. Logging:    method, path, status, duration and upload size
"""
