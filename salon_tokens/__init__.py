"""Salon token queue system.

Walk-in customers pick a queue (male/female by default) and a service, and
get a sequential token number. Staff advance a per-queue "now serving"
pointer. The pieces:

- a Queue Engine that owns the token lifecycle (waiting -> serving -> served)
- a Token Store (in-memory, or SQLAlchemy for durable storage)
- a Notification Relay that broadcasts changes (in-process and over MQTT)
- an HTTP API (FastAPI) and a command line entrypoint (`python -m salon_tokens.app`)
"""

__version__ = "1.0.0"
