"""Thread chat dispatch — admission, per-user mutual exclusion, runner handoff.

The dispatcher admits work from two triggers (a scheduler firing for one
chat, and queue drains after enqueue) and guarantees at most one running
thread chat per user. Mutual exclusion lives in PostgreSQL (the
active_runs table), so any number of service instances can run side by
side. The sweeper catches anything the triggers missed.
"""
