"""
Core lobby logic

This package holds everything that mutates lobby state:
- Registry: lobby lifecycle
- Membership: join, leave, kick, ban
- Engines: map, encounter, campaign graph
- Policy: who may do what
- Commands and Broadcaster: routing and fan-out
- Locks: per-lobby concurrency control
"""
