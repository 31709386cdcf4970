"""
Background workers for the books sync service.

Workers:
- retry_worker: periodically asks the web app to run one retry tick
  (failed orders are re-synced there, with the decrypted credentials).
"""

from booksync.workers.retry_worker import trigger_retry_tick, run_retry_worker_loop

__all__ = [
    "trigger_retry_tick",
    "run_retry_worker_loop",
]
