from __future__ import annotations

import uvicorn

from tenantinfra.apps.api.main import create_app
from tenantinfra.core.config import get_settings


def main() -> None:
    # Serve the operations API with env-driven settings; workers run separately.
    settings = get_settings()
    uvicorn.run(create_app(), host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    main()
