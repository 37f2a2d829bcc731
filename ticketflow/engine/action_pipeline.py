"""Action Pipeline - Ordered, failure-isolated execution of transition actions"""
import contextvars
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import List, Optional

from .actions import ACTION_HANDLERS, ActionRun, deadline_seconds
from ..config.settings import settings
from ..domain.models import Action, ActionOutcome
from ..domain.errors import ActionTimeoutError, DomainError
from ..utils.logger import get_logger

logger = get_logger(__name__)


class ActionPipeline:
    """
    Runs a transition's active actions strictly by execution_order

    Each action is isolated: a failure is recorded in its outcome and the next
    action still runs. Network-bound actions run on a worker thread and are
    abandoned once their deadline passes, so a hung endpoint cannot hold the
    pipeline past the configured bound.
    """

    def __init__(self, max_workers: Optional[int] = None):
        self._io_pool = ThreadPoolExecutor(
            max_workers=max_workers or settings.action_worker_threads,
            thread_name_prefix="action-io",
        )

    def shutdown(self) -> None:
        self._io_pool.shutdown(wait=False, cancel_futures=True)

    def run_all(self, actions: List[Action], run: ActionRun) -> List[ActionOutcome]:
        """
        Execute actions in ascending execution_order (ties keep insertion order)

        Returns:
            One outcome per action, in execution order
        """
        ordered = sorted((a for a in actions if a.is_active), key=lambda a: a.execution_order)
        outcomes = [self.run_one(action, run) for action in ordered]
        failed = sum(1 for o in outcomes if not o.success)
        if failed:
            logger.warning(
                f"{failed} of {len(outcomes)} actions failed",
                extra={"ticket_id": run.ticket.ticket_id, "transition_id": run.transition.transition_id}
            )
        return outcomes

    def run_one(self, action: Action, run: ActionRun) -> ActionOutcome:
        handler = ACTION_HANDLERS[action.action_type]
        started = time.monotonic()
        log_extra = {
            "ticket_id": run.ticket.ticket_id,
            "transition_id": run.transition.transition_id,
            "action_id": action.action_id,
            "action_type": action.action_type.value,
        }

        try:
            deadline = deadline_seconds(action)
            if deadline is None:
                output = handler(action.action_config, run)
            else:
                # Carry the correlation id into the worker thread
                call_context = contextvars.copy_context()
                future = self._io_pool.submit(call_context.run, handler, action.action_config, run)
                try:
                    output = future.result(timeout=deadline)
                except FutureTimeoutError:
                    future.cancel()
                    raise ActionTimeoutError(
                        f"{action.action_type.value} action exceeded its {int(deadline * 1000)} ms deadline",
                        details={"timeout_ms": int(deadline * 1000)}
                    )
        except DomainError as e:
            duration_ms = int((time.monotonic() - started) * 1000)
            logger.warning(
                f"Action {action.action_id} failed: {e.message}",
                extra={**log_extra, "error_code": e.error_code, "duration_ms": duration_ms}
            )
            return ActionOutcome(
                action_id=action.action_id,
                action_type=action.action_type,
                execution_order=action.execution_order,
                success=False,
                error=e.message,
                error_code=e.error_code,
                duration_ms=duration_ms,
            )
        except Exception as e:
            duration_ms = int((time.monotonic() - started) * 1000)
            logger.error(
                f"Action {action.action_id} crashed: {e}",
                exc_info=True,
                extra={**log_extra, "duration_ms": duration_ms}
            )
            return ActionOutcome(
                action_id=action.action_id,
                action_type=action.action_type,
                execution_order=action.execution_order,
                success=False,
                error=f"{type(e).__name__}: {e}",
                error_code="ACTION_FAILED",
                duration_ms=duration_ms,
            )

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"Action {action.action_id} ({action.action_type.value}) succeeded",
            extra={**log_extra, "duration_ms": duration_ms}
        )
        return ActionOutcome(
            action_id=action.action_id,
            action_type=action.action_type,
            execution_order=action.execution_order,
            success=True,
            output=output,
            duration_ms=duration_ms,
        )
