"""
Ops Workflow Hub - Routes Package

Router factories; each takes the service it exposes.
"""

from .approval_events import create_approval_events_router
from .claims import create_claims_router
from .leave import create_leave_router

__all__ = [
    'create_approval_events_router',
    'create_claims_router',
    'create_leave_router',
]
