from __future__ import annotations

from typing import Any, Callable

from tenantinfra.core.config import get_settings
from tenantinfra.providers.trust.base import ScopedCredential


ClientFactory = Callable[[ScopedCredential, str], Any]


def scoped_client(credential: ScopedCredential, service_name: str) -> Any:
    # Every target-account client is built from the tenant's scoped keys, never ambient ones.
    import boto3

    session = boto3.session.Session(
        aws_access_key_id=credential.access_key_id,
        aws_secret_access_key=credential.secret_access_key,
        aws_session_token=credential.session_token,
        region_name=get_settings().aws_region,
    )
    return session.client(service_name)
