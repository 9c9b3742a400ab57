from __future__ import annotations

import copy
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from botocore.exceptions import ClientError

from tenantinfra.providers.trust.base import ScopedCredential


def client_error(code: str, message: str = "error", *, status: int = 400, operation: str = "Call") -> ClientError:
    # Build botocore errors the same way the SDK raises them.
    return ClientError(
        {
            "Error": {"Code": code, "Message": message},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        operation,
    )


def make_credential(
    tenant_id: str = "t1",
    target_account_id: str = "111111111111",
    *,
    expires_in_s: int = 3600,
) -> ScopedCredential:
    return ScopedCredential(
        access_key_id="ASIATESTKEY",
        secret_access_key="test-secret",
        session_token="test-session-token",
        expiration=datetime.now(timezone.utc) + timedelta(seconds=expires_in_s),
        target_account_id=target_account_id,
        tenant_id=tenant_id,
        session_name=f"tenant-infra-{tenant_id}-1",
        role_arn=f"arn:aws:iam::{target_account_id}:role/CrossAccountTenantRole",
    )


class FakeStsClient:
    def __init__(self, errors: list[Exception] | None = None) -> None:
        self.calls: list[dict[str, Any]] = []
        # Raised in order on successive calls before succeeding.
        self.errors = list(errors or [])

    def assume_role(self, **kwargs: Any) -> dict[str, Any]:
        self.calls.append(kwargs)
        if self.errors:
            raise self.errors.pop(0)
        account_id = kwargs["RoleArn"].split(":")[4]
        return {
            "Credentials": {
                "AccessKeyId": f"ASIA{len(self.calls):04d}",
                "SecretAccessKey": "secret",
                "SessionToken": "token",
                "Expiration": datetime.now(timezone.utc) + timedelta(seconds=kwargs["DurationSeconds"]),
            },
            "AssumedRoleUser": {
                "Arn": f"arn:aws:sts::{account_id}:assumed-role/CrossAccountTenantRole/{kwargs['RoleSessionName']}",
            },
        }


class FakeDynamoDBClient:
    """In-memory stand-in for the low-level DynamoDB client used on the shared table."""

    def __init__(self, *, page_size: int = 100) -> None:
        self.tables: dict[str, dict[tuple[str, str], dict[str, Any]]] = {}
        self.page_size = page_size
        self.calls: list[tuple[str, dict[str, Any]]] = []
        # Per-method queue of exceptions to raise before behaving normally.
        self.errors: dict[str, list[Exception]] = {}
        # Number of trailing delete requests to leave unprocessed on each batch call.
        self.unprocessed_plan: list[int] = []

    def _maybe_raise(self, method: str) -> None:
        queued = self.errors.get(method)
        if queued:
            raise queued.pop(0)

    def _table(self, name: str) -> dict[tuple[str, str], dict[str, Any]]:
        return self.tables.setdefault(name, {})

    def seed(self, table_name: str, pk: str, sk: str, **attrs: str) -> None:
        item = {"pk": {"S": pk}, "sk": {"S": sk}}
        item.update({key: {"S": value} for key, value in attrs.items()})
        self._table(table_name)[(pk, sk)] = item

    def rows_for(self, table_name: str, pk: str) -> list[dict[str, Any]]:
        return [item for (row_pk, _sk), item in sorted(self._table(table_name).items()) if row_pk == pk]

    def put_item(self, **kwargs: Any) -> dict[str, Any]:
        self.calls.append(("put_item", kwargs))
        self._maybe_raise("put_item")
        table = self._table(kwargs["TableName"])
        item = kwargs["Item"]
        key = (item["pk"]["S"], item["sk"]["S"])
        if kwargs.get("ConditionExpression") == "attribute_not_exists(pk)" and key in table:
            raise client_error("ConditionalCheckFailedException", "The conditional request failed")
        table[key] = copy.deepcopy(item)
        return {}

    def query(self, **kwargs: Any) -> dict[str, Any]:
        self.calls.append(("query", kwargs))
        self._maybe_raise("query")
        pk = kwargs["ExpressionAttributeValues"][":pk"]["S"]
        rows = self.rows_for(kwargs["TableName"], pk)
        start = 0
        start_key = kwargs.get("ExclusiveStartKey")
        if start_key:
            start = next(
                idx + 1 for idx, row in enumerate(rows) if row["sk"]["S"] == start_key["sk"]["S"]
            )
        page = rows[start : start + self.page_size]
        response: dict[str, Any] = {
            "Items": [{"pk": row["pk"], "sk": row["sk"]} for row in page],
            "Count": len(page),
        }
        if start + self.page_size < len(rows):
            last = page[-1]
            response["LastEvaluatedKey"] = {"pk": last["pk"], "sk": last["sk"]}
        return response

    def batch_write_item(self, **kwargs: Any) -> dict[str, Any]:
        self.calls.append(("batch_write_item", kwargs))
        self._maybe_raise("batch_write_item")
        unprocessed: dict[str, list[dict[str, Any]]] = {}
        skip = self.unprocessed_plan.pop(0) if self.unprocessed_plan else 0
        for table_name, requests in kwargs["RequestItems"].items():
            table = self._table(table_name)
            keep = requests[len(requests) - skip :] if skip else []
            for request in requests[: len(requests) - skip]:
                key = request["DeleteRequest"]["Key"]
                table.pop((key["pk"]["S"], key["sk"]["S"]), None)
            if keep:
                unprocessed[table_name] = keep
        return {"UnprocessedItems": unprocessed}

    def count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)


class FakeCloudFormationClient:
    """In-memory CloudFormation that advances stacks a little on every describe."""

    def __init__(
        self,
        *,
        account_id: str = "111111111111",
        region: str = "us-east-1",
        polls_to_complete: int = 1,
        create_outcome: str = "CREATE_COMPLETE",
        delete_outcome: str = "DELETE_COMPLETE",
        stuck: bool = False,
    ) -> None:
        self.account_id = account_id
        self.region = region
        self.polls_to_complete = polls_to_complete
        self.create_outcome = create_outcome
        self.delete_outcome = delete_outcome
        self.stuck = stuck
        self.stacks: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.errors: dict[str, list[Exception]] = {}

    def _maybe_raise(self, method: str) -> None:
        queued = self.errors.get(method)
        if queued:
            raise queued.pop(0)

    def _find(self, name_or_id: str) -> dict[str, Any] | None:
        if name_or_id in self.stacks:
            return self.stacks[name_or_id]
        # Lookups by name only see live stacks, like the real service.
        for stack in reversed(list(self.stacks.values())):
            if stack["StackName"] == name_or_id and stack["StackStatus"] != "DELETE_COMPLETE":
                return stack
        return None

    def _missing(self, name_or_id: str) -> Exception:
        return client_error("ValidationError", f"Stack with id {name_or_id} does not exist")

    def add_stack(self, name: str, status: str = "CREATE_COMPLETE") -> str:
        stack_id = f"arn:aws:cloudformation:{self.region}:{self.account_id}:stack/{name}/{uuid4()}"
        self.stacks[stack_id] = {
            "StackId": stack_id,
            "StackName": name,
            "StackStatus": status,
            "StackStatusReason": None,
            "Outputs": [{"OutputKey": "TableName", "OutputValue": name.replace("-dynamodb", "")}],
            "_describes": 0,
        }
        return stack_id

    def status_of(self, name_or_id: str) -> str | None:
        stack = self._find(name_or_id)
        return stack["StackStatus"] if stack else None

    def create_stack(self, **kwargs: Any) -> dict[str, Any]:
        self.calls.append(("create_stack", kwargs))
        self._maybe_raise("create_stack")
        if self._find(kwargs["StackName"]) is not None:
            raise client_error("AlreadyExistsException", f"Stack [{kwargs['StackName']}] already exists")
        stack_id = self.add_stack(kwargs["StackName"], status="CREATE_IN_PROGRESS")
        return {"StackId": stack_id}

    def describe_stacks(self, **kwargs: Any) -> dict[str, Any]:
        self.calls.append(("describe_stacks", kwargs))
        self._maybe_raise("describe_stacks")
        stack = self._find(kwargs["StackName"])
        if stack is None:
            raise self._missing(kwargs["StackName"])
        if stack["StackStatus"].endswith("_IN_PROGRESS") and not self.stuck:
            stack["_describes"] += 1
            if stack["_describes"] > self.polls_to_complete:
                if stack["StackStatus"] == "CREATE_IN_PROGRESS":
                    stack["StackStatus"] = self.create_outcome
                    if self.create_outcome != "CREATE_COMPLETE":
                        stack["StackStatusReason"] = "The following resource(s) failed to create: [TenantTable]."
                elif stack["StackStatus"] == "DELETE_IN_PROGRESS":
                    stack["StackStatus"] = self.delete_outcome
        public = {key: value for key, value in stack.items() if not key.startswith("_")}
        return {"Stacks": [copy.deepcopy(public)]}

    def delete_stack(self, **kwargs: Any) -> dict[str, Any]:
        self.calls.append(("delete_stack", kwargs))
        self._maybe_raise("delete_stack")
        stack = self._find(kwargs["StackName"])
        if stack is not None and stack["StackStatus"] != "DELETE_COMPLETE":
            stack["StackStatus"] = "DELETE_IN_PROGRESS"
            stack["_describes"] = 0
        return {}

    def describe_stack_events(self, **kwargs: Any) -> dict[str, Any]:
        self.calls.append(("describe_stack_events", kwargs))
        self._maybe_raise("describe_stack_events")
        stack = self._find(kwargs["StackName"])
        if stack is None:
            raise self._missing(kwargs["StackName"])
        events = [
            {
                "Timestamp": datetime(2026, 1, 1, 0, 0, idx, tzinfo=timezone.utc),
                "LogicalResourceId": "TenantTable",
                "ResourceStatus": "CREATE_FAILED",
                "ResourceStatusReason": f"failure {idx}",
            }
            for idx in range(8)
        ]
        return {"StackEvents": events}

    def count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)


class FakeClientFactory:
    """Hands out fake clients per service and records which credential asked for them."""

    def __init__(self, *, dynamodb: FakeDynamoDBClient | None = None, cloudformation: FakeCloudFormationClient | None = None) -> None:
        self.dynamodb = dynamodb or FakeDynamoDBClient()
        self.cloudformation = cloudformation or FakeCloudFormationClient()
        self.credentials: list[ScopedCredential] = []

    def __call__(self, credential: ScopedCredential, service_name: str) -> Any:
        self.credentials.append(credential)
        return {"dynamodb": self.dynamodb, "cloudformation": self.cloudformation}[service_name]
