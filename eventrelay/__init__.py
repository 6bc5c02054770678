"""
eventrelay

Durable event delivery: an in-process event bus fed by a transactional
outbox and a polling relay.
"""

__version__ = "1.0.0"
