import pytest
import requests

from comet_monitor import cometbft_client
from comet_monitor.cometbft_client import CometBFTClient, CometRPCError


class FakeResponse:
    def __init__(self, payload=None, status_code=200, json_error=None):
        self.payload = payload
        self.status_code = status_code
        self.json_error = json_error

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Server Error")

    def json(self):
        if self.json_error is not None:
            raise self.json_error
        return self.payload


@pytest.fixture
def requests_get(monkeypatch):
    calls = []
    responses = []

    def fake_get(url, params=None, headers=None, timeout=None):
        calls.append({"url": url, "params": params, "headers": headers, "timeout": timeout})
        response = responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    monkeypatch.setattr(cometbft_client.requests, "get", fake_get)
    fake_get.calls = calls
    fake_get.responses = responses
    return fake_get


def test_status_request(requests_get):
    requests_get.responses.append(FakeResponse({"jsonrpc": "2.0", "result": {"sync_info": {}}}))
    client = CometBFTClient("http://127.0.0.1:26657/", timeout=3)

    payload = client.get_status()

    assert payload["result"] == {"sync_info": {}}
    call = requests_get.calls[0]
    assert call["url"] == "http://127.0.0.1:26657/status"
    assert call["timeout"] == 3
    assert call["headers"] == {"Accept": "application/json"}


def test_height_params(requests_get):
    requests_get.responses.extend([FakeResponse({"result": {}}) for _ in range(3)])
    client = CometBFTClient("http://node:26657")

    client.get_commit(42)
    client.get_block(-5)
    client.get_unconfirmed_txs(25)

    assert requests_get.calls[0]["params"] == {"height": "42"}
    assert requests_get.calls[1]["params"] == {"height": "0"}
    assert requests_get.calls[2]["url"].endswith("/unconfirmed_txs")
    assert requests_get.calls[2]["params"] == {"limit": "25"}


def test_consensus_state_endpoint(requests_get):
    requests_get.responses.append(FakeResponse({"result": {"round_state": {}}}))
    CometBFTClient("http://node:26657").get_consensus_state()
    assert requests_get.calls[0]["url"] == "http://node:26657/dump_consensus_state"


def test_timeout_raises_rpc_error(requests_get):
    requests_get.responses.append(requests.exceptions.Timeout("slow"))
    with pytest.raises(CometRPCError) as excinfo:
        CometBFTClient("http://node:26657", timeout=2).get_abci_info()
    assert excinfo.value.endpoint == "abci_info"
    assert "timed out after 2s" in str(excinfo.value)


def test_http_error_raises_rpc_error(requests_get):
    requests_get.responses.append(FakeResponse(status_code=500))
    with pytest.raises(CometRPCError) as excinfo:
        CometBFTClient("http://node:26657").get_net_info()
    assert "500" in excinfo.value.message


def test_invalid_json_raises_rpc_error(requests_get):
    requests_get.responses.append(FakeResponse(json_error=ValueError("Expecting value")))
    with pytest.raises(CometRPCError, match="invalid JSON response"):
        CometBFTClient("http://node:26657").get_status()


def test_json_rpc_error_body(requests_get):
    requests_get.responses.append(
        FakeResponse({"error": {"code": -32603, "message": "Internal error", "data": "height 9 must be less than or equal to 5"}})
    )
    with pytest.raises(CometRPCError) as excinfo:
        CometBFTClient("http://node:26657").get_commit(9)
    assert excinfo.value.message == "RPC error -32603: height 9 must be less than or equal to 5"


def test_non_object_response(requests_get):
    requests_get.responses.append(FakeResponse(["unexpected"]))
    with pytest.raises(CometRPCError, match="unexpected response format"):
        CometBFTClient("http://node:26657").get_health()
