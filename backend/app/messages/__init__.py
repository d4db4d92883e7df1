"""HTTP message routes.

REST counterpart to the realtime endpoint: history reads plus send, edit,
delete and group creation. Every write is also pushed to the matching
rooms so connected clients see it immediately.
"""
