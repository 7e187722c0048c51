#!/usr/bin/env python3
"""Run the local keeper simulator: the control plane plus the job engine.

Usage:
  python scripts/simulator.py --rpc-url http://127.0.0.1:8545 --account 0
  PRIVATE_KEY=0x... python scripts/simulator.py

Environment variables:
- RPC_URL, PRIVATE_KEY (overridden by the flags)
- HOST, PORT (default 127.0.0.1:7788)
- POLL_SECONDS, LOG_POLL_SECONDS, RECEIPT_TIMEOUT_SECONDS
- LOG_LEVEL, LOG_JSON=1
- TESTING=1 to run against the in-memory chain
"""
import argparse
import logging
import os
import sys

import uvicorn

# Default Anvil / Hardhat dev accounts (public test keys, never use on a real network).
DEV_ACCOUNTS = [
    ("0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266", "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"),
    ("0x70997970C51812dc3A010C7d01b50e0d17dc79C8", "0x59c6995e998f97a5a0044966f0945389dc9e86dae88c7a8412f4603b6b78690d"),
    ("0x3C44CdDdB6a900fa2b585dd299e03d12FA4293BC", "0x5de4111afa1a4b94908f83103eb1f1706367c2e68ca870fc3fb9a804cdab365a"),
]


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Local keeper simulator")
    parser.add_argument("--rpc-url", help="JSON-RPC URL of the local node (Anvil, Hardhat, Ganache)")
    parser.add_argument("--private-key", help="private key of the wallet that sends performUpkeep transactions")
    parser.add_argument(
        "--account",
        type=int,
        choices=range(len(DEV_ACCOUNTS)),
        help="use one of the default Anvil/Hardhat dev accounts instead of --private-key",
    )
    parser.add_argument("--host", default=os.getenv("HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.getenv("PORT", "7788")))
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)

    # keepersim.config reads the environment at import time
    if args.rpc_url:
        os.environ["RPC_URL"] = args.rpc_url
    if args.account is not None:
        os.environ["PRIVATE_KEY"] = DEV_ACCOUNTS[args.account][1]
    elif args.private_key:
        os.environ["PRIVATE_KEY"] = args.private_key

    from keepersim import config
    from keepersim.logging_config import configure_logging

    configure_logging()
    log = logging.getLogger("keepersim.simulator")

    if not config.TESTING and (not config.RPC_URL or not config.PRIVATE_KEY):
        log.error("RPC URL and private key are required to start the simulator.")
        return 1

    log.info("starting local keeper simulator on http://%s:%s (rpc=%s)", args.host, args.port, config.RPC_URL)
    uvicorn.run("keepersim.main:app", host=args.host, port=args.port, log_config=None)
    return 0


if __name__ == "__main__":
    sys.exit(main())
