"""Shared route dependencies"""

from __future__ import annotations

from threading import Lock
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from digestq.service import DigestService

# Module-level service injected at startup (or by tests)
_service: DigestService | None = None
_lock = Lock()


def set_service(service: DigestService | None) -> None:
    """Inject the DigestService used by the routes.

    Side Effects:
        - Sets module-level _service variable
    """
    global _service
    _service = service


def get_service() -> DigestService:
    """FastAPI dependency; builds the production service on first use."""
    global _service
    if _service is None:
        with _lock:
            if _service is None:
                from digestq.service import DigestService

                _service = DigestService.from_environment()
    return _service
