from __future__ import annotations

import time
from typing import Dict, Union

from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from storefront.database import engine


def check_database_health() -> Dict[str, Union[str, float]]:
    """Attempt a lightweight DB query to ensure connectivity."""
    started = time.perf_counter()
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
    except OperationalError as exc:
        return {"status": "DOWN", "backend": engine.dialect.name, "detail": str(exc)}
    return {
        "status": "UP",
        "backend": engine.dialect.name,
        "latency_ms": round((time.perf_counter() - started) * 1000, 2),
    }
