from __future__ import annotations

from functools import lru_cache

from fastapi import Depends

from tenantinfra.services.provisioning.workflow import ProvisioningWorkflow
from tenantinfra.services.registry import RegistryWriter


@lru_cache
def _default_workflow() -> ProvisioningWorkflow:
    return ProvisioningWorkflow()


def get_workflow() -> ProvisioningWorkflow:
    # Tests swap this through app.dependency_overrides.
    return _default_workflow()


def get_registry(workflow: ProvisioningWorkflow = Depends(get_workflow)) -> RegistryWriter:
    # Registry reads share the workflow's writer so both see the same database.
    return workflow.services.registry
