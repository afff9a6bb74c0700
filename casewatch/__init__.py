"""
casewatch
=========

SLA deadline tracking and escalation service for security case management.
"""

__version__ = "1.0.0"
