"""
SLA Interfaces Layer
=====================

API controllers (FastAPI routes) for the SLA engine.
"""

from helpdesk_sla.sla.interfaces.controllers import (
    sla_router,
    get_uow_factory,
    get_sweeper,
    get_dispatcher,
)

__all__ = ["sla_router", "get_uow_factory", "get_sweeper", "get_dispatcher"]
