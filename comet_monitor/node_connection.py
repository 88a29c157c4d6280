from dataclasses import dataclass
from urllib.parse import urlsplit

DEFAULT_NODE_ADDRESS = "localhost"
DEFAULT_RPC_PORT = "26657"


@dataclass(frozen=True)
class NodeConnection:
    base_url: str
    input_value: str
    rpc_url: str
    protocol: str
    hostname: str
    port: str


def _with_scheme(address: str) -> str:
    if "://" in address:
        return address
    return f"http://{address}"


def build_node_connection(raw_input) -> NodeConnection:
    """
    Normalize a user supplied node address ("1.2.3.4", "node:26657",
    "https://rpc.example.org") into the RPC base URL used for requests.
    """
    address = raw_input.strip() if isinstance(raw_input, str) else ""
    parsed = urlsplit(_with_scheme(address or DEFAULT_NODE_ADDRESS))
    try:
        parsed_port = parsed.port
    except ValueError:
        parsed_port = None

    protocol = "https" if parsed.scheme == "https" else "http"
    hostname = parsed.hostname or DEFAULT_NODE_ADDRESS
    port = str(parsed_port) if parsed_port else DEFAULT_RPC_PORT
    host_for_url = f"[{hostname}]" if ":" in hostname else hostname
    rpc_url = f"{protocol}://{host_for_url}:{port}"
    path = parsed.path.rstrip("/")

    if parsed_port and port != DEFAULT_RPC_PORT:
        input_value = f"{host_for_url}:{port}"
    else:
        input_value = hostname

    return NodeConnection(
        base_url=f"{rpc_url}{path}",
        input_value=input_value,
        rpc_url=rpc_url,
        protocol=protocol,
        hostname=hostname,
        port=port,
    )
