"""
Help-Desk SLA Engine
====================

SLA policy resolution and escalation engine for a help-desk ticketing portal.
"""

__version__ = "1.0.0"
