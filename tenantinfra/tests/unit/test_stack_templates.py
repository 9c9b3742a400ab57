from __future__ import annotations

import json

import pytest

from tenantinfra.core.errors import ProvisioningValidationError
from tenantinfra.providers.stacks.templates import (
    derive_stack_name,
    derive_table_name,
    public_partition_key,
    render_tenant_table_template,
    template_body,
)


def test_names_are_deterministic() -> None:
    assert derive_stack_name("t1", prefix="tenant") == "tenant-t1-dynamodb"
    assert derive_stack_name("t1", prefix="tenant") == derive_stack_name("t1", prefix="tenant")
    assert derive_table_name("t1", prefix="tenant", workspace="dev") == "tenant-t1-private-dev"
    assert public_partition_key("t1") == "TENANT#t1"


def test_stack_name_is_sanitized() -> None:
    assert derive_stack_name("acme_corp.eu", prefix="tenant") == "tenant-acme-corp-eu-dynamodb"
    assert derive_stack_name("t1", prefix="9x")[0].isalpha()


def test_blank_tenant_is_rejected() -> None:
    with pytest.raises(ProvisioningValidationError):
        derive_stack_name(" ", prefix="tenant")
    with pytest.raises(ProvisioningValidationError):
        render_tenant_table_template("", table_name="x", environment="test", workspace="dev")


def test_template_describes_encrypted_on_demand_table() -> None:
    document = render_tenant_table_template(
        "t1",
        table_name="tenant-t1-private-dev",
        environment="test",
        workspace="dev",
    )

    table = document["Resources"]["TenantTable"]
    assert table["Type"] == "AWS::DynamoDB::Table"
    properties = table["Properties"]
    assert properties["TableName"] == "tenant-t1-private-dev"
    assert properties["BillingMode"] == "PAY_PER_REQUEST"
    assert properties["SSESpecification"] == {"SSEEnabled": True}
    assert properties["PointInTimeRecoverySpecification"] == {"PointInTimeRecoveryEnabled": True}
    assert [key["KeyType"] for key in properties["KeySchema"]] == ["HASH", "RANGE"]
    assert {"Key": "TenantId", "Value": "t1"} in properties["Tags"]
    assert set(document["Outputs"]) == {"TableName", "TableArn"}


def test_template_body_is_stable() -> None:
    first = render_tenant_table_template("t1", table_name="a", environment="test", workspace="dev")
    second = render_tenant_table_template("t1", table_name="a", environment="test", workspace="dev")
    assert template_body(first) == template_body(second)
    assert json.loads(template_body(first)) == first
