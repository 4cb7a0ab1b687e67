"""Round rules (pure logic).

- Tier classification, bonus lottery maths, pool splits and prize payouts.
- Avoid I/O: no DB sessions, no HTTP/FastAPI, no Redis.
- Time and randomness are passed in as arguments.
"""
