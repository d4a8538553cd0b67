"""hostrelay - channel relay and command dispatch for remote GUI hosts.

A tool-calling agent reaches a GUI host process through a websocket broker:
commands are correlated by id, kept alive by host progress reports, and
survive flaky networks through a reconnecting, heartbeating transport.
"""

__version__ = "0.1.0"
