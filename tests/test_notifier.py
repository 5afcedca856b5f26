"""Operator alert channels for cost-runaway incidents."""

from __future__ import annotations

import json

import httpx
import pytest

from brf_extract.models.schemas import CostIncident
from brf_extract.services.notifier import LogNotifier, WebhookNotifier


def _incident() -> CostIncident:
    return CostIncident(
        log_id="log-1",
        tenant_id="tenant-1",
        model="test/model",
        credential_id="cred-a",
        reserved=0.5,
        actual=7.5,
        multiplier=10.0,
    )


async def test_log_notifier_keeps_incidents():
    notifier = LogNotifier()
    await notifier.notify(_incident())
    assert [i.log_id for i in notifier.incidents] == ["log-1"]


async def test_webhook_posts_incident_json():
    posted = []

    def handler(request: httpx.Request) -> httpx.Response:
        posted.append(json.loads(request.content))
        return httpx.Response(204)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    await WebhookNotifier("https://ops.test/hook", client=client).notify(_incident())

    [payload] = posted
    assert payload["tenant_id"] == "tenant-1"
    assert payload["actual"] == 7.5


async def test_webhook_failure_raises():
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
    with pytest.raises(httpx.HTTPStatusError):
        await WebhookNotifier("https://ops.test/hook", client=client).notify(_incident())
