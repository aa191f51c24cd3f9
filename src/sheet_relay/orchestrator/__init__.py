"""Task orchestration engine for spreadsheet-driven AI sessions.

Why not Celery / Dramatiq / Arq?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The hard part here is not queuing. The queue *is* the spreadsheet: work is
re-derived from cell contents on every pass, claims are text markers written
into the very cells that will receive answers, and there is no broker or lock
server to lean on. Key responsibilities no generic queue covers:

- Re-parsing group layout, dependency gates and row/column directives from a
  snapshot that operators may edit between passes.
- Timestamped lease markers with per-feature durations and expiry checks,
  tolerating the store's lack of compare-and-swap.
- A small pool of position-bound browser sessions driven through a phased
  protocol with staggered starts.
- Category-aware escalation (retry in place, recreate the session, provision
  a new surface) with per-tier backoff schedules.

A broker would add an operational dependency while the spreadsheet would
still have to stay the source of truth, so the scheduler is a plain
discover -> lease -> execute -> release loop over threads.
"""
