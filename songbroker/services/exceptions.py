"""Error hierarchy for provider calls and task lifecycle operations.

- ProviderError: anything that went wrong talking to the provider
- TaskLifecycleError: requests that conflict with a record's current state
"""

from typing import Optional


class ProviderError(Exception):
    """Base exception for provider call failures."""

    pass


class ProviderHTTPError(ProviderError):
    """Provider answered with an error status after the client's own retries."""

    def __init__(
        self,
        status_code: int,
        message: str = "",
        provider_code: Optional[int] = None,
    ):
        self.status_code = status_code
        self.provider_code = provider_code
        self.message = message
        detail = f"Provider returned HTTP {status_code}"
        if provider_code is not None:
            detail += f" (code {provider_code})"
        if message:
            detail += f": {message}"
        super().__init__(detail)


class ProviderConnectionError(ProviderError):
    """Transport-level failure (connection refused, DNS, TLS, timeout)."""

    pass


class ProviderResponseError(ProviderError):
    """Provider answered 2xx with a body we cannot interpret."""

    pass


class TaskLifecycleError(Exception):
    """Base exception for task and generation state errors."""

    pass


class TaskNotFoundError(TaskLifecycleError):
    """No task with the given provider task id."""

    def __init__(self, provider_task_id: str):
        self.provider_task_id = provider_task_id
        super().__init__(f"Task {provider_task_id} not found")


class TaskStateConflictError(TaskLifecycleError):
    """The requested transition is not allowed from the task's current status."""

    def __init__(self, provider_task_id: str, current_status: str):
        self.provider_task_id = provider_task_id
        self.current_status = current_status
        super().__init__(f"Task {provider_task_id} is already {current_status}")


class GenerationNotFoundError(TaskLifecycleError):
    """No generation with the given generation id."""

    def __init__(self, generation_id: str):
        self.generation_id = generation_id
        super().__init__(f"Generation {generation_id} not found")


class TaskCountMismatchError(TaskLifecycleError):
    """A generation was registered with the wrong number of provider tasks."""

    def __init__(self, expected: int, received: int):
        self.expected = expected
        self.received = received
        super().__init__(f"Expected {expected} provider tasks, received {received}")
