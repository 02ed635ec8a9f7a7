"""Exception hierarchy shared by the managers and the outer surfaces."""


class TaskPilotError(Exception):
    """Base class for all taskpilot errors."""


class ValidationError(TaskPilotError, ValueError):
    """A required argument is missing or malformed. Raised before any mutation."""


class NotFoundError(TaskPilotError, ValueError):
    """A referenced entity does not exist. Raised before any mutation."""

    def __init__(self, entity: str, entity_id):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}")


class InvalidStateError(TaskPilotError):
    """The operation is not legal in the entity's current state."""


class InvalidTransitionError(InvalidStateError):
    def __init__(self, current, requested):
        self.current = current
        self.requested = requested
        super().__init__(f"Invalid status transition from {current} to {requested}")


class CircularDependencyError(InvalidStateError):
    def __init__(self, task_id: int, depends_on_id: int):
        self.task_id = task_id
        self.depends_on_id = depends_on_id
        super().__init__(
            f"Adding dependency {task_id} -> {depends_on_id} would create a circular reference"
        )


class AgentUnavailableError(InvalidStateError):
    def __init__(self, agent_id: str, state):
        self.agent_id = agent_id
        self.state = state
        super().__init__(f"Agent {agent_id} is not available. Current state: {state}")


class TaskNotAssignedError(InvalidStateError):
    def __init__(self, task_id: int, agent_id: str):
        self.task_id = task_id
        self.agent_id = agent_id
        super().__init__(f"Task {task_id} is not assigned to agent {agent_id}")
