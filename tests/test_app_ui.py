import pytest
from conftest import consensus_payload

from comet_monitor.app_ui import create_app
from comet_monitor.cometbft_client import CometRPCError
from comet_monitor.monitor import NodeMonitor


@pytest.fixture
def monitor(config, fake_client):
    return NodeMonitor(config, client=fake_client)


@pytest.fixture
def client(monitor):
    app = create_app(monitor, start_monitor=False)
    app.config["TESTING"] = True
    return app.test_client()


def test_health_before_first_sample(client):
    response = client.get("/health")
    assert response.status_code == 503
    body = response.get_json()
    assert body["online"] is False
    assert body["issues"] == ["initializing"]


def test_refresh_then_health(client):
    response = client.post("/refresh")
    assert response.status_code == 200
    assert response.get_json() == {"status": "success"}

    response = client.get("/health")
    assert response.status_code == 200
    body = response.get_json()
    assert body["healthy"] is True
    assert body["consensus_healthy"] is True
    assert body["divergence"] is False


def test_unhealthy_consensus_returns_503(client, fake_client):
    votes = [{"round": 0, "prevotes_bit_array": "BA{3:___}"}]
    fake_client.consensus = consensus_payload(step=3, votes=votes)
    client.post("/refresh")

    response = client.get("/health")
    assert response.status_code == 503
    assert response.get_json()["issues"] == ["prevote participation below two-thirds threshold"]


def test_status_snapshot(client, fake_client):
    fake_client.mempool = CometRPCError("unconfirmed_txs", "boom")
    client.post("/refresh")

    body = client.get("/status").get_json()
    assert body["loading"] is False
    assert body["status"]["height"] == 1000
    assert body["mempool"] is None
    assert body["health"]["warnings"] == ["mempool data unavailable"]
    assert body["node"]["rpc_url"] == "http://127.0.0.1:26657"
    assert body["divergence_state"] == "none"


def test_history(client):
    client.post("/refresh")
    body = client.get("/history").get_json()
    assert set(body) == {"consensus", "block_time", "mempool_depth", "peer_count"}
    assert body["consensus"][0]["height"] == 1000


def test_set_reference(client, monitor):
    response = client.post("/reference", json={"address": "rpc.example.org"})
    assert response.status_code == 200
    assert response.get_json()["reference_node"] == "http://rpc.example.org:26657"
    assert monitor.reference.hostname == "rpc.example.org"


def test_set_reference_requires_address(client):
    assert client.post("/reference", json={}).status_code == 400
    assert client.post("/reference", data="not json").status_code == 400
