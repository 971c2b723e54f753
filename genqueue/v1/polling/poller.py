from genqueue.config.logging import get_logger
from genqueue.v1.tasks.service import GenerationTaskService

logger = get_logger(__name__)


class TaskCompletionPoller:
    """Completion poller backed by the task store.

    Each poll doubles as the timeout check for the task, so a stalled processing task is
    timed out by the polling run rather than waiting for the hourly sweep.
    """

    def __init__(self, tasks: GenerationTaskService):
        self.tasks = tasks

    async def poll(
        self, generation_id: str, workflow_type: str, item_ids: list[str], attempt: int
    ) -> bool:
        task = await self.tasks.repository.get(generation_id)
        if task is None:
            logger.info("Polled generation no longer exists", generation_id=generation_id)
            return True

        task = await self.tasks.check_task_timeout(generation_id)
        logger.debug(
            "Generation polled",
            generation_id=generation_id,
            status=task.status.value,
            progress=task.progress,
            attempt=attempt,
        )
        return task.is_settled()
