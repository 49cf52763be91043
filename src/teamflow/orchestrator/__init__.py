"""Phase-gated task orchestration over a SQLite task store.

A plan is split into streams (disjoint ownership domains) and phases
(barrier generations). Each stream gets exactly one worker thread; workers
claim tasks through compare-and-swap updates, so SQLite is the only shared
mutable state and a crashed coordinator resumes from what is stored.

Task content is produced by a pluggable executor (``backend``); this
package only decides when a task may run and records what happened.
"""
