from __future__ import annotations
from typing import Optional

from lifeledger.config import Settings, load_settings
from lifeledger.log import logger
from .local import LocalGateway
from .base import ExtractionGateway


def get_gateway(settings: Optional[Settings] = None, backend: Optional[str] = None) -> ExtractionGateway:
    s = settings or load_settings()
    name = (backend or s.llm_backend or "local").lower()

    # Honor remote_allowed: if false, force local
    if not s.remote_allowed:
        name = "local"

    if name == "local":
        return LocalGateway()
    if name == "openai":
        from .openai import OpenAIGateway
        return OpenAIGateway(timeout=s.background_timeout)

    logger.warning(f"[llm] unknown llm_backend {name!r}; using local gateway")
    return LocalGateway()
