"""
Node list loader.

Reads the upstream YAML file and flattens it into NodeDescriptor entries
grouped by chain. Only json-rpc connectors are handed to the checker.

Expected shape:

    upstream-config:
      upstreams:
        - id: eth-1
          chain: ethereum
          connectors:
            - type: json-rpc
              url: https://rpc.example.org
"""

from dataclasses import dataclass, field
from typing import Dict, List

import yaml

JSON_RPC_CONNECTOR = "json-rpc"


class ConfigError(Exception):
    """The node list is missing, malformed or cannot be evaluated."""


@dataclass(frozen=True)
class NodeDescriptor:
    id: str
    chain: str
    address: str


@dataclass(frozen=True)
class Connector:
    type: str
    url: str


@dataclass(frozen=True)
class Upstream:
    id: str
    chain: str
    connectors: List[Connector] = field(default_factory=list)


@dataclass
class NodeConfig:
    upstreams: List[Upstream] = field(default_factory=list)

    def nodes_by_chain(self) -> Dict[str, List[NodeDescriptor]]:
        """Group json-rpc nodes by chain, keeping file order."""
        result: Dict[str, List[NodeDescriptor]] = {}
        for node in self.all_nodes():
            result.setdefault(node.chain, []).append(node)
        return result

    def all_nodes(self) -> List[NodeDescriptor]:
        return [
            NodeDescriptor(id=upstream.id, chain=upstream.chain, address=connector.url)
            for upstream in self.upstreams
            for connector in upstream.connectors
            if connector.type == JSON_RPC_CONNECTOR
        ]


def _parse_upstream(raw: dict, index: int) -> Upstream:
    if not isinstance(raw, dict):
        raise ConfigError(f"upstream #{index} is not a mapping")
    upstream_id = raw.get("id")
    chain = raw.get("chain")
    if not upstream_id or not chain:
        raise ConfigError(f"upstream #{index} must set both 'id' and 'chain'")

    connectors = []
    for raw_conn in raw.get("connectors") or []:
        if not isinstance(raw_conn, dict):
            raise ConfigError(f"upstream {upstream_id} has a malformed connector")
        connectors.append(Connector(type=str(raw_conn.get("type") or ""), url=str(raw_conn.get("url") or "")))
    return Upstream(id=str(upstream_id), chain=str(chain), connectors=connectors)


def parse_config(data: dict) -> NodeConfig:
    """Validate an already-decoded YAML document."""
    if not isinstance(data, dict):
        raise ConfigError("config file must contain a mapping")
    upstream_config = data.get("upstream-config") or {}
    if not isinstance(upstream_config, dict):
        raise ConfigError("'upstream-config' must be a mapping")
    raw_upstreams = upstream_config.get("upstreams") or []
    if not raw_upstreams:
        raise ConfigError("no upstreams configured in config file")

    upstreams = [_parse_upstream(raw, i) for i, raw in enumerate(raw_upstreams)]

    seen = set()
    for upstream in upstreams:
        for connector in upstream.connectors:
            if not connector.url:
                raise ConfigError(f"upstream {upstream.id} has empty connector URL")
            if connector.url in seen:
                raise ConfigError(f"duplicate connector URL: {connector.url}")
            seen.add(connector.url)

    return NodeConfig(upstreams=upstreams)


def load_config(path: str) -> NodeConfig:
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"failed to read config file: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"failed to parse config file: {e}") from e
    return parse_config(data)
