"""
SLA Module
==========

Rule resolution, SLA clock evaluation and escalation for help-desk tickets.
"""
