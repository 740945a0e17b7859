from __future__ import annotations
import asyncio
from typing import Any, Callable

from lifeledger.errors import ExternalServiceError, LifeLedgerError


async def call_gateway(fn: Callable[..., str], *args: Any, timeout: float, label: str) -> str:
    """
    Run a (blocking) gateway method off the event loop with a hard timeout.
    One attempt only; timeouts and provider errors become ExternalServiceError.
    """
    try:
        return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise ExternalServiceError(
            f"{label} timed out after {timeout:.0f}s", details={"timeout": timeout}
        ) from e
    except LifeLedgerError:
        raise
    except Exception as e:
        raise ExternalServiceError(f"{label} failed: {e}") from e
