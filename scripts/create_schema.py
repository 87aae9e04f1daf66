from __future__ import annotations

import asyncio

from pulsemeter.core.logging import configure_logging
from pulsemeter.persistence.db import create_schema, dispose_engine, get_engine


async def _main() -> None:
    # Create missing metering tables; existing tables are left untouched.
    configure_logging()
    await create_schema(get_engine())
    await dispose_engine()
    print("pulsemeter_schema_ready")


if __name__ == "__main__":
    asyncio.run(_main())
