"""Authentication for HTTP routes and WebSocket sessions.

Learn: Tokens are issued elsewhere. This service only verifies them and
turns the `sub` and `role` claims into a Principal.
"""
