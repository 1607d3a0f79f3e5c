"""
StoryForge
Background run executor.

Large generation runs are handed to a daemon thread; callers poll the Run
record for completion. The Run row is the only observable state.
"""

import logging
import threading
from datetime import datetime, timezone

from flask import current_app

from storyforge.models import db
from storyforge.models.run import Run

logger = logging.getLogger(__name__)

# In-memory registry of running jobs (run_id → Thread)
_running_tasks: dict[str, threading.Thread] = {}


class RunTaskRunner:
    """Runs generation jobs in background threads."""

    def submit(self, run_id: str, execute_fn) -> threading.Thread:
        """
        Start ``execute_fn(run_id)`` in a background thread.

        The run must already be committed so the worker can read it.
        Must be called inside an app context.
        """
        app = current_app._get_current_object()
        t = threading.Thread(
            target=self._execute_in_background,
            args=(app, run_id, execute_fn),
            name=f"run-{run_id[:8]}",
            daemon=True,
        )
        _running_tasks[run_id] = t
        t.start()
        logger.info("Run %s dispatched to background worker", run_id, extra={"run_id": run_id})
        return t

    def is_running(self, run_id: str) -> bool:
        t = _running_tasks.get(run_id)
        return bool(t and t.is_alive())

    def wait(self, run_id: str, timeout: float | None = None) -> None:
        """Block until the run's worker exits (used by tests and shutdown)."""
        t = _running_tasks.get(run_id)
        if t:
            t.join(timeout)

    # ── Internal ──────────────────────────────────────────────────────────

    def _execute_in_background(self, app, run_id: str, execute_fn):
        with app.app_context():
            try:
                execute_fn(run_id)
            except Exception as e:
                logger.exception("RunTaskRunner: run %s failed: %s", run_id, e, extra={"run_id": run_id})
                db.session.rollback()
                run = db.session.get(Run, run_id)
                if run and run.status not in ("completed", "failed"):
                    run.status = "failed"
                    run.error_message = str(e)[:2000]
                    run.completed_at = datetime.now(timezone.utc)
                    db.session.commit()
            finally:
                db.session.remove()
                _running_tasks.pop(run_id, None)


task_runner = RunTaskRunner()
