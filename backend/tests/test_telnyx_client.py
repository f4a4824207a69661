import json

import httpx
import pytest

from clinic_claims.services import telnyx_client
from clinic_claims.services.telnyx_client import MessageDeliveryError, TelnyxClient, to_e164


@pytest.fixture
def telnyx_api(monkeypatch):
    """Routes the client's httpx calls to an in-process handler."""
    requests = []
    state = {"status": 200}
    real_client = httpx.Client

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(state["status"], json={"data": {"id": "msg-1", "status": "queued"}})

    def _client(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(telnyx_client.httpx, "Client", _client)
    return requests, state


def test_to_e164_uses_default_country_for_local_numbers():
    assert to_e164("0917 123 4567", "63") == "+639171234567"
    assert to_e164("+1 (415) 555-0100", "63") == "+14155550100"


def test_mock_mode_never_calls_the_provider(telnyx_api):
    requests, _ = telnyx_api

    result = TelnyxClient(api_key="key", mode="mock").send("09171234567", "hello")

    assert result.status == "mock"
    assert requests == []


def test_live_mode_posts_to_messages(telnyx_api):
    requests, _ = telnyx_api
    client = TelnyxClient(
        api_key="key",
        from_number="+15550001111",
        messaging_profile_id="profile-1",
        base_url="https://telnyx.test/v2",
        mode="live",
    )

    result = client.send("09171234567", "code 123456")

    assert result.message_id == "msg-1"
    assert requests[0].url == "https://telnyx.test/v2/messages"
    assert requests[0].headers["Authorization"] == "Bearer key"
    assert json.loads(requests[0].content) == {
        "to": "+639171234567",
        "text": "code 123456",
        "from": "+15550001111",
        "messaging_profile_id": "profile-1",
    }


def test_provider_error_raises_delivery_error(telnyx_api):
    _, state = telnyx_api
    state["status"] = 500
    client = TelnyxClient(api_key="key", base_url="https://telnyx.test/v2", mode="live")

    with pytest.raises(MessageDeliveryError):
        client.send("09171234567", "code 123456")
