from . import addresses, maintenance, network_routers, pools, sessions

__all__ = ["addresses", "maintenance", "network_routers", "pools", "sessions"]
