from __future__ import annotations

import uvicorn

from dataroom.apps.api.main import create_app
from dataroom.core.config import get_settings


def main() -> None:
    # Run the API with env-driven settings for local and compose deployments.
    settings = get_settings()
    uvicorn.run(create_app(), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
