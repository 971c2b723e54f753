from typing import Any, Generic, Protocol, TypeVar

# Base registry implementation
T = TypeVar("T")


class Registry(Generic[T]):
    """Generic registry for pluggable implementations."""

    def __init__(self, name: str):
        self.name = name
        self._implementations: dict[str, T] = {}
        self._frozen = False

    def register(self, name: str, implementation: T) -> None:
        """Register an implementation with a given name. The last registration wins."""
        if self._frozen:
            raise RuntimeError(
                f"Cannot register '{name}' in {self.name.lower()} registry: "
                "registry is frozen in production mode"
            )
        self._implementations[name] = implementation

    def get(self, name: str) -> T:
        """Get an implementation by name."""
        if name not in self._implementations:
            raise KeyError(
                f"No {self.name.lower()} implementation registered with name: {name}"
            )
        return self._implementations[name]

    def has(self, name: str) -> bool:
        return name in self._implementations

    def list(self) -> list[str]:
        """List all registered implementation names."""
        return list(self._implementations.keys())

    def freeze(self) -> None:
        """Freeze the registry to prevent further modifications."""
        self._frozen = True

    def is_frozen(self) -> bool:
        """Check if the registry is frozen."""
        return self._frozen


# Job Registry - background processing handlers
class JobHandler(Protocol):
    """Protocol for job handlers that process background work.

    Plain callables taking the context are accepted as well; see
    ``HandlerRegistry.register_handler``.
    An optional ``async on_failed(context, error)`` method is awaited once the job has
    failed its last attempt.
    """

    async def handle(self, context: Any) -> dict[str, Any] | None:
        """
        Handle a background job.

        Args:
            context: JobContext exposing job_id, payload and update_progress

        Returns:
            Optional result dictionary to store with the completed job
        """
        ...


class JobRegistry(Registry[Any]):
    """Registry for background job handlers, keyed by job type."""

    def __init__(self):
        super().__init__("Job")


# Item generator - produces the content for one work item of a generation task
class ItemGenerator(Protocol):
    """Protocol for the collaborator that generates one item of a task."""

    async def generate(
        self, workflow_type: str, item_id: str, task_id: str
    ) -> dict[str, Any] | None:
        """
        Generate content for a single item.

        Raises on failure; the item is then recorded as failed with the error message.
        """
        ...


class CompletionPoller(Protocol):
    """Protocol for checking whether a polled generation has finished."""

    async def poll(
        self, generation_id: str, workflow_type: str, item_ids: list[str], attempt: int
    ) -> bool:
        """Return True once the generation is finished and can leave the polling queue."""
        ...


class PeriodicTriggerHost(Protocol):
    """The host facility that fires periodic callbacks (APScheduler compatible)."""

    def add_job(self, func: Any, trigger: Any = None, **kwargs: Any) -> Any:
        ...
