"""Single-consumer processor for queued lifecycle tasks.

Tasks move ``pending -> processing -> completed|failed``. Only one task is
executed at a time; that serialization is what keeps container, proxy and
record mutations free of races.
"""

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from observability.alerting.engine import AlertEngine
from observability.events.models import AgentEnd, ToolExecutionEnd, ToolExecutionStart
from observability.tracing.tracer import Tracer

from .errors import ValidationError
from .lifecycle import LifecycleTools
from .logging_manager import audit_log
from .simple_models import Task, TaskStatus, TaskType, utcnow
from .store import RecordStore

logger = logging.getLogger(__name__)

RESTART_ERROR = "Task interrupted by orchestrator restart"
SECRET_PARAMS = ("bot_token", "api_key")


async def enqueue_task(
    store: RecordStore,
    task_type: TaskType | str,
    user_id: str,
    params: dict[str, Any] | None = None,
    instance_id: str | None = None,
) -> Task:
    """Insert a new ``pending`` task."""
    task = Task(type=TaskType(task_type), user_id=user_id, params=params or {}, instance_id=instance_id)
    await store.insert("tasks", task.to_record())
    logger.info(
        f"Enqueued {task.type.value} task {task.id}",
        extra={"task_id": task.id, "instance_id": instance_id},
    )
    return task


class TaskQueueProcessor:
    """Claims the oldest pending task, runs it, and records the outcome."""

    def __init__(
        self,
        store: RecordStore,
        tools: LifecycleTools,
        tracer_factory: Callable[..., Tracer] | None = None,
        alert_engine: AlertEngine | None = None,
        poll_interval: float = 2.0,
        error_backoff: float = 5.0,
    ):
        """Initialize the processor.

        Args:
            store: Record store holding tasks and instances
            tools: Lifecycle operations tasks dispatch to
            tracer_factory: Builds a tracer per task (``user_id``/``task_type`` kwargs)
            alert_engine: Evaluated against every saved task trace
            poll_interval: Sleep between polls when the queue is empty (seconds)
            error_backoff: Sleep after a claim or store failure (seconds)
        """
        self.store = store
        self.tools = tools
        self.tracer_factory = tracer_factory or Tracer
        self.alert_engine = alert_engine
        self.poll_interval = poll_interval
        self.error_backoff = error_backoff

        self._task: asyncio.Task | None = None
        self._running = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            raise RuntimeError("TaskQueueProcessor is already running")

        recovered = await self.recover_stale_tasks()
        if recovered:
            logger.warning(f"Marked {recovered} interrupted task(s) as failed")

        self._running = True
        self._task = asyncio.create_task(self.run())
        logger.info(f"TaskQueueProcessor started (poll interval: {self.poll_interval}s)")

    async def stop(self, timeout: float = 5.0) -> None:
        """Stop the loop. An in-flight task gets ``timeout`` seconds to finish."""
        if not self._running:
            return

        self._running = False
        if self._task:
            try:
                await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
            except TimeoutError:
                logger.warning("Task loop did not stop within timeout, cancelling")
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    pass

        logger.info("TaskQueueProcessor stopped")

    def is_running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    async def recover_stale_tasks(self) -> int:
        """Fail tasks a previous process left in ``processing``.

        There is no lease, so anything still ``processing`` at start-up can
        never complete.
        """
        return await self.store.update_many(
            "tasks",
            {"status": TaskStatus.PROCESSING.value},
            {"status": TaskStatus.FAILED.value, "error": RESTART_ERROR},
        )

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Poll loop; never exits on a processing error."""
        logger.info("Task loop started")
        self._running = True

        while self._running:
            try:
                handled = await self.process_next()
            except asyncio.CancelledError:
                logger.info("Task loop cancelled")
                raise
            except Exception as e:
                logger.error(f"Task loop error: {e}", exc_info=True)
                await asyncio.sleep(self.error_backoff)
                continue

            if handled is None:
                await asyncio.sleep(self.poll_interval)

        logger.info("Task loop exited")

    async def claim_next(self) -> Task | None:
        """Atomically move the oldest pending task to ``processing``."""
        record = await self.store.find_first(
            "tasks", {"status": TaskStatus.PENDING.value}, order_by="created_at"
        )
        if record is None:
            return None

        claimed = await self.store.update_many(
            "tasks",
            {"id": record["id"], "status": TaskStatus.PENDING.value},
            {"status": TaskStatus.PROCESSING.value},
        )
        if claimed != 1:
            return None

        task = Task.from_record(record)
        task.status = TaskStatus.PROCESSING
        return task

    async def process_next(self) -> Task | None:
        """Claim and execute one task.

        Returns:
            The finished task, or None if the queue was empty
        """
        task = await self.claim_next()
        if task is None:
            return None

        logger.info(
            f"Processing {task.type.value} task {task.id}",
            extra={"task_id": task.id, "instance_id": task.instance_id},
        )
        tracer = self.tracer_factory(user_id=task.user_id, task_type=task.type.value)
        tracer.process_event(
            ToolExecutionStart(
                tool_call_id=task.id,
                tool_name=task.type.value,
                args={k: v for k, v in task.params.items() if k not in SECRET_PARAMS},
            )
        )

        try:
            result = await self._dispatch(task)
        except Exception as e:
            tracer.process_event(ToolExecutionEnd(task.id, task.type.value, is_error=True, result=str(e)))
            task.status = TaskStatus.FAILED
            task.error = str(e) or e.__class__.__name__
            logger.error(f"Task {task.id} failed: {task.error}", extra={"task_id": task.id})
        else:
            tracer.process_event(ToolExecutionEnd(task.id, task.type.value, is_error=False))
            task.status = TaskStatus.COMPLETED
            task.result = result
        tracer.process_event(AgentEnd())

        task.trace_id = await self._save_trace(tracer)
        await self.store.update_many(
            "tasks",
            {"id": task.id},
            {
                "status": task.status.value,
                "result": task.result,
                "error": task.error,
                "trace_id": task.trace_id,
                "finished_at": utcnow(),
            },
        )
        audit_log(
            logger,
            f"Task {task.id} {task.status.value}",
            action=f"task_{task.status.value}",
            metadata={"task_id": task.id, "type": task.type.value, "error": task.error},
        )
        return task

    async def _save_trace(self, tracer: Tracer) -> str | None:
        """Persist the task trace and evaluate alerts; failures only log."""
        try:
            await tracer.save()
        except Exception as e:
            logger.warning(f"Failed to save task trace: {e}")
            return None

        if self.alert_engine is not None:
            try:
                await self.alert_engine.evaluate(tracer.get_trace())
            except Exception as e:
                logger.warning(f"Alert evaluation failed: {e}")
        return tracer.trace_id

    async def _dispatch(self, task: Task) -> dict[str, Any]:
        params = task.params
        instance_id = task.instance_id or params.get("instance_id")

        if task.type == TaskType.INSTANCE_CREATE:
            return await self.tools.create(
                user_id=task.user_id,
                name=params.get("name", ""),
                channel=params.get("channel", ""),
                bot_token=params.get("bot_token"),
                ai_provider=params.get("ai_provider"),
                api_key=params.get("api_key"),
                region=params.get("region"),
                instance_type=params.get("instance_type"),
                instance_id=instance_id,
            )
        if task.type == TaskType.NGINX_SYNC:
            return await self.tools.sync_proxy()

        if not instance_id:
            raise ValidationError(f"{task.type.value} requires an instance id")

        if task.type == TaskType.INSTANCE_START:
            return await self.tools.start(task.user_id, instance_id)
        if task.type == TaskType.INSTANCE_STOP:
            return await self.tools.stop(task.user_id, instance_id)
        if task.type == TaskType.INSTANCE_DELETE:
            return await self.tools.delete(task.user_id, instance_id)
        if task.type == TaskType.INSTANCE_UPDATE:
            return await self.tools.update(task.user_id, instance_id)

        raise ValidationError(f"Unsupported task type: {task.type.value}")
