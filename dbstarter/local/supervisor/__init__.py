"""
The Supervisor package.
Manages the lifecycle of the database servers run by this starter.

This package contains the central Service class and its helper modules,
which together handle peer bootstrap, starting, supervising, restarting and
stopping of all server roles.
"""
from .state import State
from .supervisor import Service, create_runner

__all__ = ['Service', 'State', 'create_runner']
