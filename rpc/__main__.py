"""Command line interface for checking RPC connectivity"""
import argparse
import sys

from config import load_config, SettingsError
from . import EthereumRPC, RPCError, UnavailableError


def check_rpc(client: EthereumRPC, expected_chain_id: int) -> bool:
    """Print head height and chain id, return False on a mismatch"""
    print("\nTesting RPC endpoint:")
    print("-" * 50)

    block_number = client.get_block_number()
    print(f"  Current block height: {block_number}")

    chain_id = client.get_chain_id()
    print(f"  Chain id: {chain_id}")
    if chain_id != expected_chain_id:
        print(f"  Error: expected chain id {expected_chain_id}")
        return False

    timestamp = client.get_block_timestamp(block_number)
    print(f"  Head timestamp: {timestamp}")
    return True


def main() -> int:
    parser = argparse.ArgumentParser(description="Check the configured RPC endpoint")
    parser.add_argument('--settings', default='.', help="Directory holding settings.conf")
    args = parser.parse_args()

    try:
        settings = load_config(args.settings)
    except SettingsError as e:
        print(str(e))
        return 2

    try:
        ok = check_rpc(EthereumRPC.from_settings(settings), settings['chain_id'])
    except UnavailableError as e:
        print(f"\nFailed to reach node at {settings['rpc_url']}:")
        print(f"  {str(e)}")
        return 1
    except RPCError as e:
        print(f"\nRPC Error [{e.code}] in {e.method}:")
        print(f"  {str(e)}")
        return 1

    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
