from __future__ import annotations

import argparse
import asyncio
import json
import sys

from tenantinfra.services.registry import RegistryWriter


async def _describe(tenant_id: str, limit: int) -> int:
    # Read-only view of the registry record and its status history.
    registry = RegistryWriter()
    record = await registry.get_infrastructure(tenant_id)
    if record is None:
        print(f"no infrastructure record for tenant={tenant_id}", file=sys.stderr)
        return 1
    events = await registry.list_events(tenant_id, limit=limit)
    print(json.dumps({"record": record, "events": events}, indent=2))
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Show a tenant's infrastructure record")
    parser.add_argument("--tenant", required=True, help="Tenant identifier")
    parser.add_argument("--limit", type=int, default=50, help="Max events to print")
    args = parser.parse_args()
    sys.exit(asyncio.run(_describe(args.tenant, args.limit)))


if __name__ == "__main__":
    main()
