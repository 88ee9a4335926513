"""Real-time delivery: status cache, streams, rooms, and the broker bridge.

Learn: Events flow one way:
1. A producer hands a domain event to the DeliveryCoordinator
2. The coordinator updates the status cache and this process's registries
3. The same deliveries go out on the broker for every other process

Polling clients read the cache, SSE clients hang off the streaming
registry, WebSocket clients sit in rooms.
"""
