from __future__ import annotations

import logging
from typing import Any

from tenantinfra.core.errors import (
    DeploymentSubmissionError,
    DeploymentTransientError,
    ProvisioningValidationError,
    StackNotFoundError,
)
from tenantinfra.domain.state import Operation, PollOutcome
from tenantinfra.providers.aws import errors as aws_errors
from tenantinfra.providers.aws.clients import ClientFactory, scoped_client
from tenantinfra.providers.stacks.base import PollResult
from tenantinfra.providers.stacks.cloudformation import call_cloudformation, describe_stack
from tenantinfra.providers.trust.base import ScopedCredential


logger = logging.getLogger(__name__)

FAILURE_EVENT_LIMIT = 5

# Provider statuses per operation. Anything absent is passed through raw.
_STATUS_MAP: dict[Operation, dict[str, PollOutcome]] = {
    Operation.CREATE: {
        "CREATE_COMPLETE": PollOutcome.COMPLETE,
        "UPDATE_COMPLETE": PollOutcome.COMPLETE,
        "CREATE_IN_PROGRESS": PollOutcome.IN_PROGRESS,
        "REVIEW_IN_PROGRESS": PollOutcome.IN_PROGRESS,
        "UPDATE_IN_PROGRESS": PollOutcome.IN_PROGRESS,
        "UPDATE_COMPLETE_CLEANUP_IN_PROGRESS": PollOutcome.IN_PROGRESS,
        # Update and import rollbacks return the stack to its created state.
        "UPDATE_FAILED": PollOutcome.IN_PROGRESS,
        "UPDATE_ROLLBACK_IN_PROGRESS": PollOutcome.IN_PROGRESS,
        "UPDATE_ROLLBACK_COMPLETE_CLEANUP_IN_PROGRESS": PollOutcome.IN_PROGRESS,
        "UPDATE_ROLLBACK_COMPLETE": PollOutcome.COMPLETE,
        "UPDATE_ROLLBACK_FAILED": PollOutcome.FAILED,
        "IMPORT_IN_PROGRESS": PollOutcome.IN_PROGRESS,
        "IMPORT_COMPLETE": PollOutcome.COMPLETE,
        "IMPORT_ROLLBACK_IN_PROGRESS": PollOutcome.IN_PROGRESS,
        "IMPORT_ROLLBACK_COMPLETE": PollOutcome.COMPLETE,
        "IMPORT_ROLLBACK_FAILED": PollOutcome.FAILED,
        "CREATE_FAILED": PollOutcome.FAILED,
        # Rollback always ends in a failed create.
        "ROLLBACK_IN_PROGRESS": PollOutcome.FAILED,
        "ROLLBACK_COMPLETE": PollOutcome.FAILED,
        "ROLLBACK_FAILED": PollOutcome.FAILED,
        # Someone removed the stack while it was being created.
        "DELETE_IN_PROGRESS": PollOutcome.FAILED,
        "DELETE_COMPLETE": PollOutcome.FAILED,
        "DELETE_FAILED": PollOutcome.FAILED,
    },
    Operation.DELETE: {
        "DELETE_COMPLETE": PollOutcome.COMPLETE,
        "DELETE_IN_PROGRESS": PollOutcome.IN_PROGRESS,
        # Describe can lag behind DeleteStack; keep polling until it catches up.
        "CREATE_COMPLETE": PollOutcome.IN_PROGRESS,
        "UPDATE_COMPLETE": PollOutcome.IN_PROGRESS,
        "CREATE_IN_PROGRESS": PollOutcome.IN_PROGRESS,
        "ROLLBACK_IN_PROGRESS": PollOutcome.IN_PROGRESS,
        "ROLLBACK_COMPLETE": PollOutcome.IN_PROGRESS,
        "UPDATE_IN_PROGRESS": PollOutcome.IN_PROGRESS,
        "UPDATE_FAILED": PollOutcome.IN_PROGRESS,
        "UPDATE_ROLLBACK_IN_PROGRESS": PollOutcome.IN_PROGRESS,
        "UPDATE_ROLLBACK_COMPLETE_CLEANUP_IN_PROGRESS": PollOutcome.IN_PROGRESS,
        "UPDATE_ROLLBACK_COMPLETE": PollOutcome.IN_PROGRESS,
        "IMPORT_IN_PROGRESS": PollOutcome.IN_PROGRESS,
        "IMPORT_COMPLETE": PollOutcome.IN_PROGRESS,
        "IMPORT_ROLLBACK_IN_PROGRESS": PollOutcome.IN_PROGRESS,
        "IMPORT_ROLLBACK_COMPLETE": PollOutcome.IN_PROGRESS,
        "DELETE_FAILED": PollOutcome.FAILED,
        "CREATE_FAILED": PollOutcome.FAILED,
        "ROLLBACK_FAILED": PollOutcome.FAILED,
        # A stuck rollback blocks DeleteStack until an operator intervenes.
        "UPDATE_ROLLBACK_FAILED": PollOutcome.FAILED,
        "IMPORT_ROLLBACK_FAILED": PollOutcome.FAILED,
    },
}


def normalize_stack_status(stack_status: str, operation: Operation) -> PollOutcome | str:
    return _STATUS_MAP[operation].get(stack_status, stack_status)


def missing_stack_result(stack_handle: str, operation: Operation) -> PollResult:
    # Already gone is success for DELETE and a vanished deployment for CREATE.
    outcome = PollOutcome.COMPLETE if operation == Operation.DELETE else PollOutcome.FAILED
    logger.info("stack_not_found stack=%s operation=%s outcome=%s", stack_handle, operation.value, outcome.value)
    return PollResult(status=outcome, detail={"stackStatus": None, "reason": "Stack not found"})


class CloudFormationStatusPoller:
    def __init__(self, *, client_factory: ClientFactory | None = None) -> None:
        self._client_factory = client_factory or scoped_client

    async def _recent_events(self, client: Any, stack_handle: str) -> list[dict[str, Any]]:
        try:
            response = await call_cloudformation(client.describe_stack_events, StackName=stack_handle)
        except Exception as exc:  # noqa: BLE001 - events are diagnostic only
            logger.warning("stack_events_unavailable stack=%s error=%s", stack_handle, exc)
            return []
        events = []
        for event in (response.get("StackEvents") or [])[:FAILURE_EVENT_LIMIT]:
            timestamp = event.get("Timestamp")
            events.append(
                {
                    "timestamp": timestamp.isoformat() if hasattr(timestamp, "isoformat") else timestamp,
                    "logicalResourceId": event.get("LogicalResourceId"),
                    "resourceStatus": event.get("ResourceStatus"),
                    "resourceStatusReason": event.get("ResourceStatusReason"),
                }
            )
        return events

    async def poll_status(
        self,
        stack_handle: str,
        credential: ScopedCredential,
        operation: Operation,
    ) -> PollResult:
        if not stack_handle:
            raise ProvisioningValidationError("stack handle is required to poll status")
        client = self._client_factory(credential, "cloudformation")
        try:
            stack = await describe_stack(client, stack_handle)
        except StackNotFoundError:
            return missing_stack_result(stack_handle, operation)
        except Exception as exc:
            if aws_errors.is_transient(exc):
                raise DeploymentTransientError("Stack status temporarily unavailable") from exc
            raise DeploymentSubmissionError(
                f"Stack status query rejected: {aws_errors.error_code(exc) or exc.__class__.__name__}"
            ) from exc

        stack_status = stack.get("StackStatus") or ""
        outcome = normalize_stack_status(stack_status, operation)
        detail: dict[str, Any] = {
            "stackStatus": stack_status,
            "reason": stack.get("StackStatusReason"),
        }
        if outcome == PollOutcome.COMPLETE:
            detail["outputs"] = {
                output.get("OutputKey"): output.get("OutputValue")
                for output in stack.get("Outputs") or []
            }
        elif outcome == PollOutcome.FAILED:
            detail["events"] = await self._recent_events(client, stack_handle)
        logger.info(
            "stack_polled stack=%s operation=%s stack_status=%s outcome=%s",
            stack_handle,
            operation.value,
            stack_status,
            outcome.value if isinstance(outcome, PollOutcome) else outcome,
        )
        return PollResult(status=outcome, detail=detail)
