"""Service wiring shared by the API routers.

Set by main.py during lifespan (same role as the routers' module-level
dispatcher references).
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException

from kyc_gateway.config import Settings
from kyc_gateway.jobs.journal import CallbackJournal
from kyc_gateway.jobs.lifecycle import LifecycleEngine
from kyc_gateway.jobs.poller import ReconciliationPoller


@dataclass
class Services:
    settings: Settings
    engine: LifecycleEngine
    poller: ReconciliationPoller
    callbacks: CallbackJournal


_services: Optional[Services] = None


def set_services(services: Optional[Services]) -> None:
    global _services
    _services = services


def get_services() -> Services:
    if _services is None:
        raise HTTPException(status_code=503, detail="Lifecycle engine not initialized")
    return _services
