"""
Shared Kernel Module
====================

Generic infrastructure used by the SLA bounded context and the API layer:
structured logging and HTTP middleware.

DO NOT add SLA business logic to the shared kernel.
"""
