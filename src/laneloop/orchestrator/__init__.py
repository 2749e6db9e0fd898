"""Two-lane action orchestrator with runtime guard-rails.

Why not Celery / Dramatiq / Arq?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Queuing is the easy part here. The hard part is what happens between claim
and completion: a model-driven step loop that has to be kept honest at
runtime.  Responsibilities no generic queue covers:

- Loop, frequency, near-duplicate and cooldown guard-rails evaluated on
  every proposed tool call, before it executes.
- A review gate that arbitrates forced termination and fails closed.
- A completion audit that refuses to call an action done while the user
  heard nothing, and enqueues exactly one recovery action.
- Lane discipline: one user-facing action at a time, autonomy work yields.

A broker would add an operational dependency for a single-process,
SQLite-only service while still leaving all of the above as custom logic
inside the worker.  A SQLite-backed claim -> step -> audit -> commit loop
is the right trade-off for this scope.
"""
