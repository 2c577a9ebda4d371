"""Job execution engine.

The runner drives it through two calls:

    run_task_list(tasks, engine, options)     → WorkerPool (release(), promise)
    run_task_list_once(tasks, conn, options)  → runs every runnable job once

Claiming is dialect-aware:
- Optimistic locking for SQLite (single writer, no FOR UPDATE).
- SELECT … FOR UPDATE SKIP LOCKED for PostgreSQL (proper distributed locking).
"""
