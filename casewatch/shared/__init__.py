"""
Shared Kernel Module
====================

Generic infrastructure shared by the SLA bounded context and the HTTP app:
structured logging, metrics export and API middleware.

DO NOT add SLA business logic to the shared kernel.
"""

__version__ = "1.0.0"
