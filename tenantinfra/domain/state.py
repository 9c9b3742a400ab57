from __future__ import annotations

from enum import Enum


class Operation(str, Enum):
    CREATE = "CREATE"
    DELETE = "DELETE"


class SubscriptionTier(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"


class InfrastructureStatus(str, Enum):
    UNKNOWN = "UNKNOWN"
    CREATE_IN_PROGRESS = "CREATE_IN_PROGRESS"
    CREATE_COMPLETE = "CREATE_COMPLETE"
    CREATE_FAILED = "CREATE_FAILED"
    DELETE_IN_PROGRESS = "DELETE_IN_PROGRESS"
    DELETE_COMPLETE = "DELETE_COMPLETE"
    DELETE_FAILED = "DELETE_FAILED"

    @property
    def is_terminal(self) -> bool:
        return self.value.endswith(("_COMPLETE", "_FAILED"))

    @classmethod
    def complete(cls, operation: Operation) -> "InfrastructureStatus":
        return cls(f"{operation.value}_COMPLETE")

    @classmethod
    def failed(cls, operation: Operation) -> "InfrastructureStatus":
        return cls(f"{operation.value}_FAILED")


class PollOutcome(str, Enum):
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"
    IN_PROGRESS = "IN_PROGRESS"


class WorkflowState(str, Enum):
    DETERMINE_OPERATION = "DetermineOperation"
    CREATE_INFRASTRUCTURE = "CreateInfrastructure"
    DELETE_INFRASTRUCTURE = "DeleteInfrastructure"
    POLL_INFRASTRUCTURE = "PollInfrastructure"
    CHECK_STATUS = "CheckStatus"
    WAIT_AND_POLL = "WaitAndPoll"
    SUCCESS = "SuccessState"
    FAIL_OPERATION = "FailOperation"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkflowState.SUCCESS, WorkflowState.FAIL_OPERATION)
