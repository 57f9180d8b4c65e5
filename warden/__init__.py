"""
Tunnel Warden - enforcement daemon that keeps a VPN/zero-trust client
running and self-heals tampering with its service, configuration files
and egress rules.
"""

__version__ = "1.0.0"
