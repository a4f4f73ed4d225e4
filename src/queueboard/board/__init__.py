"""Task board state machine and its agent executor.

Queues are the states, transitions the edges, tasks the tokens. Humans move
tasks through the repository; the executor claims tasks sitting in
assistant-owned queues, sends them to an external agent and routes them by
the `MOVE TO:` directive in the reply.

Why not Celery / Dramatiq / RQ?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The queues here are user-edited kanban columns with transition rules, not
broker channels. Claim exclusivity is a single conditional UPDATE against
the same SQLite file the board already lives in, so a broker would add an
operational dependency without removing any of the routing logic.
"""
