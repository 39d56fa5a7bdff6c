#!/usr/bin/env python3
"""
evm-node-check: verify that groups of EVM RPC nodes agree with each other.

Usage:
    python3 check_nodes.py \
        --config nodes.yaml \
        [--max-block-gap 10] \
        [--block-hash-count 5] \
        [--skip-debug-check] \
        [--rpc-timeout 30] \
        [--output-json report.json] \
        [--verbose]

Exits 0 when every node passed, 1 otherwise.
"""

import argparse
import json
import logging
import os
import signal
import sys
import threading
from typing import List, Optional

from node_checker import CheckOptions, CheckReport, run_check
from node_config import ConfigError, load_config

logger = logging.getLogger("check_nodes")

DEFAULT_RPC_TIMEOUT = 30


def install_interrupt_handler(cancel: threading.Event):
    """First Ctrl-C cancels in-flight probes, the second one exits."""

    def _handler(signum, frame):
        if cancel.is_set():
            # sys.exit would wait for in-flight worker threads
            print("\nForced exit", file=sys.stderr)
            sys.stderr.flush()
            os._exit(1)
        print("\nInterrupted, cancelling remaining RPC calls...", file=sys.stderr)
        cancel.set()

    return signal.signal(signal.SIGINT, _handler)


def print_results(report: CheckReport) -> None:
    for chain in report.chains:
        logger.info(
            "chain results chain=%s chain_id=%s max_block_number=%d total_nodes=%d failed_nodes=%d",
            chain.chain, chain.expected_network_id, chain.max_height,
            len(chain.nodes), len(chain.failed_nodes),
        )
        for node in chain.healthy_nodes():
            logger.info(
                "node OK id=%s chain=%s block_number=%d debug_ok=%s",
                node.id, node.chain, node.height, node.trace_capable,
            )

    if report.all_failures:
        logger.warning("failed nodes detected")
        for record in report.all_failures:
            logger.error(
                "node FAILED id=%s chain=%s address=%s reason=%s",
                record.node_id, record.chain, record.address, record.reason,
            )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Check EVM RPC nodes for consistency")
    parser.add_argument("-c", "--config", required=True, help="Path to YAML config file with nodes list")
    parser.add_argument("-g", "--max-block-gap", type=int, default=10,
                        help="Maximum allowed block gap between nodes")
    parser.add_argument("-b", "--block-hash-count", type=int, default=5,
                        help="Number of recent blocks to compare hashes")
    parser.add_argument("-s", "--skip-debug-check", action="store_true",
                        help="Skip debug mode availability check")
    parser.add_argument("--rpc-timeout", type=float, default=DEFAULT_RPC_TIMEOUT,
                        help="Per-request timeout in seconds")
    parser.add_argument("--output-json", default=None, help="Save the full report as JSON")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose output")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
        stream=sys.stderr,
    )

    options = CheckOptions(
        max_block_gap=args.max_block_gap,
        block_hash_count=args.block_hash_count,
        check_trace=not args.skip_debug_check,
        rpc_timeout=args.rpc_timeout,
    )

    cancel = threading.Event()
    previous_handler = install_interrupt_handler(cancel)

    try:
        cfg = load_config(args.config)
        nodes_by_chain = cfg.nodes_by_chain()
        total_nodes = sum(len(nodes) for nodes in nodes_by_chain.values())
        logger.info("loaded config chains=%d total_nodes=%d", len(nodes_by_chain), total_nodes)

        report = run_check(nodes_by_chain, options, logging.getLogger("node_checker"), cancel)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    print_results(report)

    if args.output_json:
        try:
            with open(args.output_json, "w") as f:
                json.dump(report.to_dict(), f, indent=2)
        except OSError as e:
            print(f"Error: failed to write report: {e}", file=sys.stderr)
            return 1
        logger.info("report saved path=%s", args.output_json)

    if not report.passed:
        print("Error: some nodes failed checks", file=sys.stderr)
        return 1

    logger.info("all nodes passed checks")
    return 0


if __name__ == "__main__":
    sys.exit(main())
