# -*- encoding: utf-8 -*-
"""
FHEVM Mock
fhevm_mock.cli module

Command-line interface for the mock coprocessor / gateway service.

Commands:
  fhevm-mock start   Start the mock service
  fhevm-mock info    Show signer addresses and configuration
  fhevm-mock handle  Decode the layout of a ciphertext handle
"""

import argparse
import logging
import sys

from eth_account import Account

from fhevm_mock.errors import ValidationError
from fhevm_mock.fhe_types import handle_index, handle_to_hex, handle_to_int, handle_type
from fhevm_mock.service import load_config, run_service


def cmd_start(args):
    """Start the mock service."""
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    run_service()


def _signer_address(private_key):
    if not private_key:
        return "(not set)"
    return Account.from_key(private_key).address


def cmd_info(args):
    """Show signer addresses and configuration."""
    config = load_config()

    print(f"Coprocessor signer: {_signer_address(config['PRIVATE_KEY_COPROCESSOR_ACCOUNT'])}")
    print(f"KMS signer:         {_signer_address(config['PRIVATE_KEY_KMS_SIGNER'])}")
    print(f"ACL:                {config['ACL_ADDRESS'] or '(not set)'}")
    print(f"Executor:           {config['EXECUTOR_ADDRESS'] or '(not set)'}")
    print(f"Gateway:            {config['GATEWAY_ADDRESS'] or '(not set)'}")
    print(f"KMS verifier:       {config['KMS_VERIFIER_ADDRESS'] or '(not set)'}")
    print(f"Input verifier:     {config['INPUT_VERIFIER_ADDRESS'] or '(not set)'}")
    print(f"Chain ID:           {config['ETH_CHAIN_ID']}")
    print(f"RPC URL:            {config['ETH_RPC_URL']}")
    print(f"HTTP port:          {config['MOCK_PORT']}")
    print(f"Poll interval:      {config['POLL_INTERVAL']}s")
    print(f"Mode:               {'mocked' if config['MOCKED'] else 'live'}")
    print(f"Shadow DB:          {config['SHADOW_DB_PATH']}")
    print(f"Gateway ABI:        {config['GATEWAY_ABI_PATH'] or '(built-in)'}")
    print(f"ACL ABI:            {config['ACL_ABI_PATH'] or '(built-in)'}")


def cmd_handle(args):
    """Print the type tag, input index and version embedded in a handle."""
    try:
        value = handle_to_int(args.handle)
        fhe_type = handle_type(value)
    except ValidationError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    print(f"Handle:   {handle_to_hex(value)}")
    print(f"Type:     {fhe_type} (tag {fhe_type.tag}, {fhe_type.bits} bits)")
    print(f"Index:    {handle_index(value)}")
    print(f"Version:  {value & 0xFF}")


def main(argv=None):
    """Entry point for the fhevm-mock CLI."""
    parser = argparse.ArgumentParser(
        prog="fhevm-mock",
        description="Mocked FHE coprocessor, KMS and gateway for local chains",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # fhevm-mock start
    start_parser = subparsers.add_parser(
        "start", help="Start the mock service"
    )
    start_parser.add_argument(
        "-v", "--verbose", action="store_true", help="Log shadow store writes"
    )
    start_parser.set_defaults(func=cmd_start)

    # fhevm-mock info
    info_parser = subparsers.add_parser(
        "info", help="Show signer addresses and configuration"
    )
    info_parser.set_defaults(func=cmd_info)

    # fhevm-mock handle
    handle_parser = subparsers.add_parser(
        "handle", help="Decode a ciphertext handle"
    )
    handle_parser.add_argument(
        "--handle", required=True, help="Handle as 0x hex or decimal"
    )
    handle_parser.set_defaults(func=cmd_handle)

    args = parser.parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
