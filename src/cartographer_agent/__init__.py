"""
Cartographer network agent.

Discovers devices on the local network, checks their reachability on a
schedule, and syncs results to the Cartographer cloud once the user has
linked the agent through the device-code login flow.
"""

__version__ = "0.1.0"
