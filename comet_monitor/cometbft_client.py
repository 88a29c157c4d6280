import logging

import requests

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10


class CometRPCError(Exception):
    def __init__(self, endpoint: str, message: str):
        super().__init__(f"{endpoint}: {message}")
        self.endpoint = endpoint
        self.message = message


class CometBFTClient:
    """Thin wrapper over the CometBFT JSON-over-HTTP RPC endpoints."""

    def __init__(self, base_url: str, timeout: float = DEFAULT_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        logger.debug(f"[Init] CometBFTClient initialized at {self.base_url}")

    def _get(self, endpoint: str, params=None):
        url = f"{self.base_url}/{endpoint}"
        try:
            response = requests.get(
                url,
                params=params,
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.Timeout:
            raise CometRPCError(endpoint, f"request timed out after {self.timeout}s") from None
        except requests.RequestException as e:
            raise CometRPCError(endpoint, str(e)) from e
        except ValueError as e:
            raise CometRPCError(endpoint, f"invalid JSON response: {e}") from e

        if not isinstance(data, dict):
            raise CometRPCError(endpoint, "unexpected response format")
        if data.get("error"):
            error = data["error"]
            if isinstance(error, dict):
                detail = error.get("data") or error.get("message") or error
                raise CometRPCError(endpoint, f"RPC error {error.get('code')}: {detail}")
            raise CometRPCError(endpoint, f"RPC error: {error}")
        logger.debug(f"[RPC] {endpoint} OK")
        return data

    def get_health(self):
        """Check /health endpoint."""
        return self._get("health")

    def get_status(self):
        """Check /status endpoint."""
        return self._get("status")

    def get_net_info(self):
        return self._get("net_info")

    def get_abci_info(self):
        return self._get("abci_info")

    def get_commit(self, height=None):
        params = {"height": str(int(height))} if height is not None else None
        return self._get("commit", params=params)

    def get_block(self, height):
        return self._get("block", params={"height": str(max(0, int(height)))})

    def get_unconfirmed_txs(self, limit: int = 100):
        return self._get("unconfirmed_txs", params={"limit": str(limit)})

    def get_consensus_state(self):
        return self._get("dump_consensus_state")
