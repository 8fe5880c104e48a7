"""
Background workers for PrepFox.

Workers:
- token_refresh_worker: refreshes stored UPS tokens that expire within 15 minutes
"""

from prepfox.workers.token_refresh_worker import run_once, run_token_refresh_worker_loop

__all__ = ["run_once", "run_token_refresh_worker_loop"]
