"""OrderPulse — real-time delivery of order, chat, location and upload events.

The event-delivery layer of a food-delivery platform: status caching for
polling clients, server-sent event streams, WebSocket rooms, and Redis
fan-out so every server process sees every change.
"""

__version__ = "0.1.0"
