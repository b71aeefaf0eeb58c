"""Exception hierarchy for the companion memory subsystem.

Request-path callers (retrieval, prompt augmentation) catch these and degrade;
API-facing callers map them to their own error responses.
"""


class MemorySystemError(Exception):
    """Base class for every memory subsystem error."""

    pass


class StorageError(MemorySystemError):
    """Persistent store failure."""

    def __init__(self, message: str, path: str | None = None):
        self.path = path
        super().__init__(message)


class MemoryNotFoundError(MemorySystemError):
    """Memory (or archive record) does not exist."""

    def __init__(self, memory_id: str, kind: str):
        self.memory_id = memory_id
        self.kind = kind
        super().__init__(f"{kind} memory not found: {memory_id}")


class MemoryAccessDeniedError(MemorySystemError):
    """Memory exists but belongs to another user."""

    def __init__(self, memory_id: str, user_id: str):
        self.memory_id = memory_id
        self.user_id = user_id
        super().__init__(f"User {user_id} does not own memory {memory_id}")


class MemoryValidationError(MemorySystemError):
    """Invalid input for a memory operation."""

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"Validation error for '{field}': {message}")


class MemoryCapacityError(MemorySystemError):
    """Capacity is exhausted and nothing can be evicted."""

    def __init__(self, config_id: str, max_memories: int):
        self.config_id = config_id
        self.max_memories = max_memories
        super().__init__(
            f"Memory capacity {max_memories} reached for config {config_id} "
            f"and no memory is evictable"
        )


class EmbeddingError(MemorySystemError):
    """Embedding provider failure."""

    pass


class LLMProviderError(MemorySystemError):
    """Completion provider failure."""

    pass


class ExtractionParseError(MemorySystemError):
    """LLM output could not be parsed into the extraction schema."""

    def __init__(self, message: str, raw: str = ""):
        self.raw = raw
        super().__init__(message)


class SummarizationError(MemorySystemError):
    """Base class for summarization job errors."""

    pass


class InsufficientMessagesError(SummarizationError):
    """Too few unsummarized messages to start a job."""

    def __init__(self, chat_id: str, available: int, required: int):
        self.chat_id = chat_id
        self.available = available
        self.required = required
        super().__init__(
            f"Chat {chat_id} has {available} unsummarized messages, "
            f"at least {required} required"
        )


class SummarizationInProgressError(SummarizationError):
    """A pending or processing job already exists for the chat."""

    def __init__(self, chat_id: str, job_id: str):
        self.chat_id = chat_id
        self.job_id = job_id
        super().__init__(f"Chat {chat_id} already has active job {job_id}")


class JobStateError(SummarizationError):
    """Illegal summarization job state transition."""

    def __init__(self, job_id: str, expected: str, actual: str | None):
        self.job_id = job_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Job {job_id} expected status {expected}, found {actual}"
        )


class TaskQueueFullError(MemorySystemError):
    """Background task queue rejected a submission."""

    def __init__(self, task_name: str, max_size: int):
        self.task_name = task_name
        self.max_size = max_size
        super().__init__(f"Task queue full ({max_size}), rejected: {task_name}")
