"""
PS License Service

Issues, activates, validates and revokes PS-XXXX-XXXX-XXXX license keys
bound to machines. The server side enforces the per-license activation cap;
the client side keeps the last known activation so an installation keeps
working offline.
"""

__version__ = "1.0.0"
