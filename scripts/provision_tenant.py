from __future__ import annotations

import argparse
import asyncio
import json
import sys

from tenantinfra.core.errors import WorkflowFailedError
from tenantinfra.core.logging import configure_logging
from tenantinfra.services.provisioning.queue import start_workflow


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create or delete a tenant's data infrastructure")
    parser.add_argument("operation", choices=["CREATE", "DELETE"], help="Operation to run")
    parser.add_argument("--tenant", required=True, help="Tenant identifier")
    parser.add_argument("--tier", required=True, choices=["public", "private"], help="Subscription tier")
    parser.add_argument("--account", default=None, help="Target AWS account id (12 digits)")
    parser.add_argument("--name", default=None, help="Tenant display name")
    parser.add_argument("--email", default=None, help="Tenant contact email")
    parser.add_argument("--actor", default="cli", help="Who initiated the operation")
    parser.add_argument("--stack-handle", default=None, help="Known stack id for private DELETE")
    return parser


async def _run(args: argparse.Namespace) -> int:
    payload = {
        "operation": args.operation,
        "tenantId": args.tenant,
        "tenantName": args.name,
        "subscriptionTier": args.tier,
        "targetAccountId": args.account,
        "email": args.email,
        "actor": args.actor,
    }
    if args.stack_handle:
        payload["stackHandle"] = args.stack_handle
    try:
        execution, output = await start_workflow({k: v for k, v in payload.items() if v is not None})
    except WorkflowFailedError as exc:
        print(json.dumps(exc.payload, indent=2, default=str))
        return 1
    if output is None:
        print(f"enqueued execution_id={execution.execution_id}")
    else:
        print(json.dumps(output, indent=2, default=str))
    return 0


def main() -> None:
    configure_logging()
    args = _build_parser().parse_args()
    sys.exit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
