# buda_manager/__main__.py
from __future__ import annotations

import uvicorn

from buda_manager.config import settings
from buda_manager.main import create_app


def main() -> None:
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
