"""
Consistency checker for groups of EVM RPC nodes.

For every chain, all of its nodes are probed in parallel, then each node is
compared against the chain's baseline:

  1. the probe itself must succeed (connect, eth_chainId, eth_blockNumber)
  2. chain id must match the first healthy node's chain id
  3. the node must not lag the highest node by more than max_block_gap
  4. debug_traceBlockByNumber must work (unless the check is disabled)

Finally the hashes of the last block_hash_count blocks are put to a
majority vote per height and dissenting nodes are flagged.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from node_config import ConfigError, NodeDescriptor
from rpc_client import ProbeCancelled, RPCClient, RPCConnectionError, RPCError, RPCQueryError

log = logging.getLogger("node_checker")

ClientFactory = Callable[..., RPCClient]


# ─── Options ─────────────────────────────────────────────────────────────────

@dataclass
class CheckOptions:
    max_block_gap: int = 10
    block_hash_count: int = 5
    check_trace: bool = True
    rpc_timeout: Optional[float] = None  # per request, seconds; None = no limit

    def validate(self) -> None:
        if self.max_block_gap < 0:
            raise ConfigError(f"max block gap must be >= 0, got {self.max_block_gap}")
        if self.block_hash_count < 0:
            raise ConfigError(f"block hash count must be >= 0, got {self.block_hash_count}")
        if self.rpc_timeout is not None and self.rpc_timeout <= 0:
            raise ConfigError(f"rpc timeout must be > 0, got {self.rpc_timeout}")


# ─── Results ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class NodeOutcome:
    id: str
    chain: str
    address: str
    network_id: Optional[int] = None
    height: int = 0
    block_hashes: Dict[int, str] = field(default_factory=dict)
    trace_capable: bool = False
    failure: Optional[RPCError] = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "chain": self.chain,
            "address": self.address,
            "network_id": self.network_id,
            "height": self.height,
            "block_hashes": {str(h): v for h, v in sorted(self.block_hashes.items())},
            "trace_capable": self.trace_capable,
            "failure": str(self.failure) if self.failure is not None else None,
        }


@dataclass(frozen=True)
class FailureRecord:
    node_id: str
    chain: str
    address: str
    reason: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class ChainOutcome:
    chain: str
    nodes: List[NodeOutcome]
    expected_network_id: Optional[int]
    max_height: int
    failed_nodes: List[FailureRecord]
    passed: bool

    def healthy_nodes(self) -> List[NodeOutcome]:
        """Probed nodes with no failure record of any kind."""
        failed = {record.address for record in self.failed_nodes}
        return [node for node in self.nodes if node.ok and node.address not in failed]

    def to_dict(self) -> dict:
        return {
            "chain": self.chain,
            "expected_network_id": self.expected_network_id,
            "max_height": self.max_height,
            "passed": self.passed,
            "nodes": [node.to_dict() for node in self.nodes],
            "failed_nodes": [record.to_dict() for record in self.failed_nodes],
        }


@dataclass(frozen=True)
class CheckReport:
    chains: List[ChainOutcome]
    all_failures: List[FailureRecord]
    passed: bool

    def to_dict(self) -> dict:
        return {
            "passed": self.passed,
            "chains": [chain.to_dict() for chain in self.chains],
            "failed_nodes": [record.to_dict() for record in self.all_failures],
        }


# ─── Node probe ──────────────────────────────────────────────────────────────

def _failed(node: NodeDescriptor, error: RPCError) -> NodeOutcome:
    return NodeOutcome(id=node.id, chain=node.chain, address=node.address, failure=error)


def probe_node(
    node: NodeDescriptor,
    options: CheckOptions,
    logger: logging.Logger = log,
    cancel: Optional[threading.Event] = None,
    client_factory: ClientFactory = RPCClient,
) -> NodeOutcome:
    """Query one endpoint. RPC errors end up in ``failure``, never raised."""
    if cancel is not None and cancel.is_set():
        return _failed(node, RPCConnectionError("failed to connect: probe cancelled"))
    try:
        client = client_factory(node.address, timeout=options.rpc_timeout, cancel=cancel)
    except RPCConnectionError as e:
        return _failed(node, e)

    with client:
        try:
            network_id = client.chain_id()
        except RPCError as e:
            return _failed(node, RPCQueryError("network id", e))

        try:
            height = client.block_number()
        except RPCError as e:
            return _failed(node, RPCQueryError("height", e))

        block_hashes: Dict[int, str] = {}
        for i in range(options.block_hash_count):
            if height < i:
                break
            target = height - i
            try:
                block_hash = client.block_hash(target)
            except ProbeCancelled as e:
                return _failed(node, RPCQueryError("block hashes", e))
            except RPCError as e:
                logger.warning("failed to get block node=%s block=%d error=%s", node.id, target, e)
                continue
            if block_hash is None:
                logger.warning("block not found node=%s block=%d", node.id, target)
                continue
            block_hashes[target] = block_hash

        trace_capable = True
        if options.check_trace:
            try:
                client.trace_block(height)
            except ProbeCancelled as e:
                return _failed(node, RPCQueryError("trace capability", e))
            except RPCError as e:
                logger.debug("debug API check failed node=%s error=%s", node.id, e)
                trace_capable = False

    return NodeOutcome(
        id=node.id,
        chain=node.chain,
        address=node.address,
        network_id=network_id,
        height=height,
        block_hashes=block_hashes,
        trace_capable=trace_capable,
    )


# ─── Chain validation ────────────────────────────────────────────────────────

def classify_node(
    node: NodeOutcome,
    expected_network_id: Optional[int],
    max_height: int,
    options: CheckOptions,
) -> Optional[str]:
    """Reason for the first rule the node breaks, or None if it passes them all."""
    if node.failure is not None:
        return f"connection/query error: {node.failure}"
    if expected_network_id is not None and node.network_id != expected_network_id:
        return f"network id mismatch: expected {expected_network_id}, got {node.network_id}"
    gap = max_height - node.height
    if gap > options.max_block_gap:
        return f"behind by {gap} blocks (max allowed {options.max_block_gap})"
    if options.check_trace and not node.trace_capable:
        return "diagnostic trace capability unavailable"
    return None


def check_chain(
    chain: str,
    nodes: Sequence[NodeDescriptor],
    options: CheckOptions,
    logger: logging.Logger = log,
    cancel: Optional[threading.Event] = None,
    client_factory: ClientFactory = RPCClient,
) -> ChainOutcome:
    outcomes: List[Optional[NodeOutcome]] = [None] * len(nodes)

    with ThreadPoolExecutor(max_workers=max(len(nodes), 1)) as executor:
        futures = {
            executor.submit(probe_node, node, options, logger, cancel, client_factory): idx
            for idx, node in enumerate(nodes)
        }
        for future in as_completed(futures):
            outcomes[futures[future]] = future.result()

    succeeded = [outcome for outcome in outcomes if outcome.ok]
    expected_network_id = succeeded[0].network_id if succeeded else None
    max_height = max((outcome.height for outcome in succeeded), default=0)

    failed_nodes = []
    for outcome in outcomes:
        reason = classify_node(outcome, expected_network_id, max_height, options)
        if reason is not None:
            failed_nodes.append(FailureRecord(outcome.id, outcome.chain, outcome.address, reason))

    hash_failures = reconcile_hashes(outcomes, logger)

    return ChainOutcome(
        chain=chain,
        nodes=outcomes,
        expected_network_id=expected_network_id,
        max_height=max_height,
        failed_nodes=failed_nodes + hash_failures,
        passed=not failed_nodes and not hash_failures,
    )


# ─── Hash reconciliation ─────────────────────────────────────────────────────

def majority_hash(votes: Mapping[str, Sequence[NodeOutcome]]) -> str:
    """Most reported hash; on a tie the one seen first wins.

    ``votes`` must be built by scanning nodes in input order so that "seen
    first" means "reported by the lowest-indexed node".
    """
    winner, best = None, 0
    for block_hash, reporters in votes.items():
        if len(reporters) > best:
            winner, best = block_hash, len(reporters)
    return winner


def reconcile_hashes(
    outcomes: Sequence[NodeOutcome],
    logger: logging.Logger = log,
) -> List[FailureRecord]:
    """Flag every node whose hash at some height disagrees with the majority.

    Records are ordered by ascending height, then by node input order.
    """
    healthy = [outcome for outcome in outcomes if outcome.ok]

    votes: Dict[int, Dict[str, List[NodeOutcome]]] = {}
    for outcome in healthy:
        for height, block_hash in outcome.block_hashes.items():
            votes.setdefault(height, {}).setdefault(block_hash, []).append(outcome)

    records = []
    for height in sorted(votes):
        by_hash = votes[height]
        if len(by_hash) <= 1:
            continue
        majority = majority_hash(by_hash)
        logger.warning(
            "block hash disagreement height=%d variants=%d majority=%s",
            height, len(by_hash), majority,
        )
        for outcome in healthy:
            block_hash = outcome.block_hashes.get(height)
            if block_hash is None or block_hash == majority:
                continue
            records.append(FailureRecord(
                outcome.id,
                outcome.chain,
                outcome.address,
                f"hash mismatch at height {height}: got {block_hash}, majority {majority}",
            ))
    return records


# ─── Aggregation / entry point ───────────────────────────────────────────────

def aggregate_results(chains: Sequence[ChainOutcome]) -> CheckReport:
    all_failures = [record for chain in chains for record in chain.failed_nodes]
    return CheckReport(
        chains=list(chains),
        all_failures=all_failures,
        passed=all(chain.passed for chain in chains),
    )


def run_check(
    nodes_by_chain: Mapping[str, Sequence[NodeDescriptor]],
    options: Optional[CheckOptions] = None,
    logger: logging.Logger = log,
    cancel: Optional[threading.Event] = None,
    client_factory: ClientFactory = RPCClient,
) -> CheckReport:
    """Check every chain and fold the outcomes into one report.

    Raises ConfigError before any probing if there is nothing to check.
    """
    options = options or CheckOptions()
    options.validate()
    if not nodes_by_chain:
        raise ConfigError("no chains to check")
    for chain, nodes in nodes_by_chain.items():
        if not nodes:
            raise ConfigError(f"chain {chain} has no json-rpc nodes")

    chains = []
    for chain, nodes in nodes_by_chain.items():
        logger.debug("checking chain chain=%s nodes=%d", chain, len(nodes))
        chains.append(check_chain(chain, nodes, options, logger, cancel, client_factory))
    return aggregate_results(chains)
