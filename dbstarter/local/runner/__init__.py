"""
The runner package.
Abstracts how server processes are started: as native processes on this host
or inside docker containers.
"""
from .base import Process, Runner, RunnerError, Volume
from .process import ProcessRunner
from .docker import DockerRunner

__all__ = ['Process', 'Runner', 'RunnerError', 'Volume', 'ProcessRunner', 'DockerRunner']
