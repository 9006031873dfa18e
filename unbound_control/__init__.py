"""
Remote control client for the unbound DNS resolver.

Contacts the server's control port over mutually authenticated TLS, sends a
single command and copies the reply to stdout.
"""

__version__ = "1.0.0"
