"""
Shared fixtures: canned CometBFT RPC payloads and an in-memory RPC client.
"""

import pytest

from comet_monitor.cometbft_client import CometRPCError
from comet_monitor.config import MonitorConfig


def status_payload(height=1000, block_time="2030-01-01T00:00:00.123456789Z", catching_up=False):
    return {
        "jsonrpc": "2.0",
        "id": -1,
        "result": {
            "node_info": {"moniker": "validator-1", "network": "testnet-1", "version": "0.38.12"},
            "sync_info": {
                "latest_block_height": str(height),
                "latest_block_time": block_time,
                "latest_app_hash": "APPHASH",
                "catching_up": catching_up,
            },
        },
    }


def consensus_payload(height=1000, round_=0, step=6, votes=None, peers=None):
    if votes is None:
        votes = [{
            "round": round_,
            "prevotes": [],
            "prevotes_bit_array": "BA{4:xxxx} 40/40 = 1.00",
            "precommits": [],
            "precommits_bit_array": "BA{4:xxxx} 40/40 = 1.00",
        }]
    return {
        "result": {
            "round_state": {"height": str(height), "round": round_, "step": step, "votes": votes},
            "peers": peers or [],
        }
    }


def abci_payload(height=1000, app_hash="AAAA"):
    return {
        "result": {
            "response": {
                "version": "1.0.0",
                "app_version": "1",
                "last_block_height": str(height),
                "last_block_app_hash": app_hash,
            }
        }
    }


def commit_payload(height=1000, app_hash="AAAA", last_results_hash="RRRR"):
    return {
        "result": {
            "signed_header": {
                "header": {"height": str(height), "app_hash": app_hash, "last_results_hash": last_results_hash}
            }
        }
    }


def block_payload(height, txs, app_hash="AAAA", block_hash="BLOCKHASH"):
    return {
        "result": {
            "block_id": {"hash": block_hash},
            "block": {
                "header": {"height": str(height), "app_hash": app_hash, "last_results_hash": "RRRR"},
                "data": {"txs": list(txs)},
            },
        }
    }


def net_info_payload(n_peers=3, outbound=1):
    peers = [{"is_outbound": index < outbound} for index in range(n_peers)]
    return {"result": {"listening": True, "n_peers": str(n_peers), "peers": peers}}


def mempool_payload(n_txs=4, total_bytes=512):
    return {"result": {"n_txs": str(n_txs), "total": str(n_txs), "total_bytes": str(total_bytes), "txs": []}}


class FakeCometClient:
    """Serves canned payloads; set an attribute to an exception to make that endpoint fail."""

    def __init__(self, base_url="http://localhost:26657"):
        self.base_url = base_url
        self.status = status_payload()
        self.consensus = consensus_payload()
        self.abci = abci_payload()
        self.commit = commit_payload()
        self.net_info = net_info_payload()
        self.mempool = mempool_payload()
        self.calls = []

    def _serve(self, name):
        self.calls.append(name)
        value = getattr(self, name)
        if isinstance(value, Exception):
            raise value
        return value

    def get_status(self):
        return self._serve("status")

    def get_consensus_state(self):
        return self._serve("consensus")

    def get_abci_info(self):
        return self._serve("abci")

    def get_commit(self, height=None):
        return self._serve("commit")

    def get_net_info(self):
        return self._serve("net_info")

    def get_unconfirmed_txs(self, limit=100):
        return self._serve("mempool")


class FakeRedis:
    def __init__(self, fail=False):
        self.entries = []
        self.fail = fail

    def xadd(self, stream_key, fields):
        if self.fail:
            import redis
            raise redis.exceptions.ConnectionError("connection refused")
        self.entries.append((stream_key, fields))
        return f"{len(self.entries)}-0"


@pytest.fixture
def fake_client():
    return FakeCometClient()


@pytest.fixture
def config():
    return MonitorConfig(
        node_url="http://127.0.0.1:26657",
        reference_node_address="https://reference.example.org:443",
        history_size=5,
    )


@pytest.fixture
def rpc_error():
    return CometRPCError("status", "connection refused")
