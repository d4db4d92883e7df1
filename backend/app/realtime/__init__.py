"""Realtime messaging over WebSocket.

Rooms multiplex direct-message, group and personal channels over a single
connection per client. The SessionManager owns every live connection and
the registry of which rooms each connection is subscribed to.
"""
