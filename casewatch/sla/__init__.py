"""
SLA Monitoring Module
=====================

Bounded Context for case SLA tracking and escalation.

Responsibilities:
- Compute case due dates from priority (P1/P2/P3)
- Classify cases into escalation states
- Mark overdue cases and warn about cases approaching their deadline
- Escalate overdue cases with debounce and notify senior analysts
- Hot-reload the SLA policy file via watchdog
- Expose case SLA status and scheduler control over HTTP
"""

__version__ = "1.0.0"
