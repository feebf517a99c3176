"""
Sockgate -- network access gateway for a privileged Unix socket.

Sockgate listens on a TCP port and forwards HTTP requests to a backend
that is only reachable through a local Unix domain socket (for example
the Docker Engine API). Each request must pass two allow-lists, the
client's source network and a URL-path fragment list, before a single
byte reaches the socket.
"""

__version__ = "1.0.0"
__author__ = "Phoenix Link (Pty) Ltd"
