"""
The agency package.
Provides a minimal client for the agency key/value API and the health check
that verifies the agency has exactly one leader everybody agrees on.
"""
from .client import AgencyAPI, AgencyConnection, KeyNotFoundError, PreconditionFailedError, RedirectError, create_agency_connections
from .health import AgencyHealthError, AgentStatus, are_agents_healthy

__all__ = [
    'AgencyAPI', 'AgencyConnection', 'KeyNotFoundError', 'PreconditionFailedError', 'RedirectError', 'create_agency_connections',
    'AgencyHealthError', 'AgentStatus', 'are_agents_healthy',
]
