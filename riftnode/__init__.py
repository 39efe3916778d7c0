"""Mesh VPN node: TUN settings and routes, NAT hole punching, beacon relay, peer state and control socket."""

__version__ = "0.1.0"