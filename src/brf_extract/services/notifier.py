# [Shared: External Collaborators]
"""
Operator Notifier: out-of-band alert channel for circuit-breaker incidents.
"""
from __future__ import annotations

import logging
from typing import List, Optional, Protocol

import httpx

from brf_extract.models.schemas import CostIncident

logger = logging.getLogger(__name__)


class OperatorNotifier(Protocol):
    async def notify(self, incident: CostIncident) -> None: ...


class LogNotifier:
    """Default channel: writes the incident to the error log and keeps it."""

    def __init__(self):
        self.incidents: List[CostIncident] = []

    async def notify(self, incident: CostIncident) -> None:
        self.incidents.append(incident)
        logger.critical(
            "COST RUNAWAY tenant=%s model=%s credential=%s reserved=$%.6f actual=$%.6f (>%.0fx)",
            incident.tenant_id,
            incident.model,
            incident.credential_id,
            incident.reserved,
            incident.actual,
            incident.multiplier,
        )


class WebhookNotifier:
    """POSTs the incident as JSON to an operator webhook."""

    def __init__(self, url: str, client: Optional[httpx.AsyncClient] = None, timeout: float = 10.0):
        self.url = url
        self._client = client
        self._timeout = timeout

    async def notify(self, incident: CostIncident) -> None:
        payload = incident.model_dump(mode="json")
        if self._client is not None:
            response = await self._client.post(self.url, json=payload, timeout=self._timeout)
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(self.url, json=payload)
        response.raise_for_status()
        logger.info(f"Cost incident {incident.log_id} posted to operator webhook")
