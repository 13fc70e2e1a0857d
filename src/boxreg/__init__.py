"""boxreg - registration server for boxes behind NAT.

Hands out stable subdomains, tracks local/public addresses, stores ACME DNS-01
challenges and lets sibling boxes find each other on the same network.
"""

__version__ = "0.1.0"
