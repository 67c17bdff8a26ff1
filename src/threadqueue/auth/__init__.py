"""Internal-caller authentication.

Every route except /health is called by trusted infrastructure only:
the scheduler, queue triggers, the execution runner and the sweeper.
They all present the shared THREADQUEUE_INTERNAL_SECRET as a bearer
token; the dispatch gate checks it.
"""
