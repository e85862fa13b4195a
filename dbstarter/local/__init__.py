"""
Local package of the starter.

Holds everything that runs inside a starter process: configuration, the peer
registry, the agency client, the runners and the supervisor.
"""
