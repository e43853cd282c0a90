"""
LiveGate — realtime session admission and quota-gated assistant streaming.
"""

__version__ = "0.1.0"
