import json
from unittest.mock import patch

import httpx
import pytest

from app.shared.core.notifications import NotificationDispatcher


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_without_endpoint_nothing_is_sent():
    with patch("app.shared.core.notifications.get_http_client") as get_client:
        await NotificationDispatcher(endpoint="").send("t1", "campaign_credits", {})

    get_client.assert_not_called()


@pytest.mark.asyncio
async def test_posts_template_and_payload():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(202)

    client = _client(handler)
    with patch("app.shared.core.notifications.get_http_client", return_value=client):
        await NotificationDispatcher(endpoint="https://notify.test/hooks").send(
            "t1", "credits_expiring", {"remaining": "90"}
        )
    await client.aclose()

    assert seen == [
        {"tenant_id": "t1", "template": "credits_expiring", "payload": {"remaining": "90"}}
    ]


@pytest.mark.asyncio
async def test_delivery_failure_is_not_raised():
    client = _client(lambda request: httpx.Response(503))
    with patch("app.shared.core.notifications.get_http_client", return_value=client):
        await NotificationDispatcher(endpoint="https://notify.test/hooks").send(
            "t1", "credits_expiring", {}
        )
    await client.aclose()
