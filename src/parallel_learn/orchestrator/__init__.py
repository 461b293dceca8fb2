"""Parallel codebase analysis: fan-out workers, join, synthesize.

Why asyncio and not a thread or process pool?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Every worker is an external CLI agent process, so the orchestrator itself
only waits: on pipes, on exit codes, on backoff timers and on a cancellation
signal. One event loop handles all of that without locks:

- Status transitions, event emission and progress counters never race,
  because they all run on the loop thread.
- Timeouts and cancellation are expressed as awaitable races against the
  process exit instead of polling.
- Worker isolation is a ``gather(..., return_exceptions=True)`` barrier; a
  crashed task becomes an errored record, not a crashed run.

A broker or a pool would add moving parts for what is a single-machine,
single-run, CLI-first tool whose groupings number in the tens.
"""
