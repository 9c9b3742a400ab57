"""Pure rendering of the private-tier stack template and its deterministic names.

Nothing here talks to AWS; the deployer submits whatever these functions return.
"""

from __future__ import annotations

import json
import re
from typing import Any

from tenantinfra.core.errors import ProvisioningValidationError


# CloudFormation stack names: letters, digits and hyphens, starting with a letter.
_STACK_NAME_INVALID = re.compile(r"[^A-Za-z0-9-]")
_TABLE_NAME_INVALID = re.compile(r"[^A-Za-z0-9_.-]")
_STACK_NAME_MAX = 128
_TABLE_NAME_MAX = 255


def _require(value: str, field: str) -> str:
    if not value or not str(value).strip():
        raise ProvisioningValidationError(f"{field} is required")
    return str(value).strip()


def derive_stack_name(tenant_id: str, *, prefix: str) -> str:
    tenant_id = _require(tenant_id, "tenant_id")
    name = _STACK_NAME_INVALID.sub("-", f"{prefix}-{tenant_id}-dynamodb")
    if not name[0].isalpha():
        name = f"t-{name}"
    return name[:_STACK_NAME_MAX]


def derive_table_name(tenant_id: str, *, prefix: str, workspace: str) -> str:
    tenant_id = _require(tenant_id, "tenant_id")
    workspace = _require(workspace, "workspace")
    name = _TABLE_NAME_INVALID.sub("-", f"{prefix}-{tenant_id}-private-{workspace}")
    return name[:_TABLE_NAME_MAX]


def public_partition_key(tenant_id: str) -> str:
    return f"TENANT#{_require(tenant_id, 'tenant_id')}"


def render_tenant_table_template(
    tenant_id: str,
    *,
    table_name: str,
    environment: str,
    workspace: str,
) -> dict[str, Any]:
    """Return the CloudFormation document for one tenant's dedicated table.

    The table is on-demand, encrypted, has point-in-time recovery and uses the same
    pk/sk key schema as the shared public table so data can move between tiers.
    """
    tenant_id = _require(tenant_id, "tenant_id")
    table_name = _require(table_name, "table_name")
    tags = [
        {"Key": "TenantId", "Value": tenant_id},
        {"Key": "Environment", "Value": environment},
        {"Key": "Workspace", "Value": workspace},
        {"Key": "ManagedBy", "Value": "tenantinfra"},
    ]
    return {
        "AWSTemplateFormatVersion": "2010-09-09",
        "Description": f"Private DynamoDB table for tenant {tenant_id}",
        "Resources": {
            "TenantTable": {
                "Type": "AWS::DynamoDB::Table",
                "Properties": {
                    "TableName": table_name,
                    "BillingMode": "PAY_PER_REQUEST",
                    "AttributeDefinitions": [
                        {"AttributeName": "pk", "AttributeType": "S"},
                        {"AttributeName": "sk", "AttributeType": "S"},
                    ],
                    "KeySchema": [
                        {"AttributeName": "pk", "KeyType": "HASH"},
                        {"AttributeName": "sk", "KeyType": "RANGE"},
                    ],
                    "PointInTimeRecoverySpecification": {"PointInTimeRecoveryEnabled": True},
                    "SSESpecification": {"SSEEnabled": True},
                    "Tags": tags,
                },
            }
        },
        "Outputs": {
            "TableName": {"Value": {"Ref": "TenantTable"}},
            "TableArn": {"Value": {"Fn::GetAtt": ["TenantTable", "Arn"]}},
        },
    }


def template_body(document: dict[str, Any]) -> str:
    # Sorted keys keep the body byte-stable across submissions of the same tenant.
    return json.dumps(document, sort_keys=True)
