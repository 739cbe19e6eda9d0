"""
Delayed job queue — decouples scheduling a follow-up from sending it.

- The scheduler ENQUEUES a job due at the business-hours-adjusted time
- Consumers CLAIM due jobs atomically and ACK / NACK them
- Supports Redis sorted sets (production) and an in-memory queue (dev)
"""
