"""Command line entry point for the staking backend.

Commands:
    markets                       List active markets
    stake                         Run one stake workflow to completion
    status REQUEST_ID             Show a workflow's state and events
    holdings ADDRESS              Show PT holdings across known markets
    redeem ADDRESS MARKET         Build (not send) a redemption transaction
    reconcile REQUEST_ID          Settle an unconfirmed workflow from the chain
    cancel REQUEST_ID             Cancel a workflow before mint submission
    run                           Run the daemon (and intent listener) until interrupted
    encrypt-key                   Encrypt a signer key to an age file
"""

import argparse
import asyncio
import getpass
import json
import sys

from stakestore.config.encryption import DEFAULT_SSH_PUBLIC_KEY, encrypt_signer_key
from stakestore.config.settings import load_config
from stakestore.core.exceptions import StakeStoreError
from stakestore.core.staking_system import StakingSystem
from stakestore.models.enums import TokenType
from stakestore.models.stake import StakeRequest
from stakestore.utils.logger import setup_logger


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stakestore",
        description="Custodial Pendle staking backend",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--env-file", help="Path to .env file")
    parser.add_argument(
        "--secrets-file",
        default="secrets.age",
        help="Age-encrypted signer key (default: secrets.age)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("markets", help="List active markets")

    stake = sub.add_parser("stake", help="Run one stake workflow to completion")
    stake.add_argument("--user", required=True, help="User address")
    stake.add_argument("--token", required=True, help="Input token address")
    stake.add_argument("--amount", required=True, type=int, help="Amount in smallest units")
    stake.add_argument("--market", required=True, help="Market (pool) address")
    stake.add_argument("--slippage", type=float, default=None, help="Slippage as a fraction")
    stake.add_argument("--request-id", default=None, help="Idempotency key (default: random)")

    status = sub.add_parser("status", help="Show a workflow's state")
    status.add_argument("request_id")

    holdings = sub.add_parser("holdings", help="Show PT holdings")
    holdings.add_argument("address")

    redeem = sub.add_parser("redeem", help="Build a redemption transaction")
    redeem.add_argument("address")
    redeem.add_argument("market")
    redeem.add_argument("--token-type", choices=[t.value for t in TokenType], default="PT")

    reconcile = sub.add_parser("reconcile", help="Settle an unconfirmed workflow")
    reconcile.add_argument("request_id")

    cancel = sub.add_parser("cancel", help="Cancel a workflow before mint submission")
    cancel.add_argument("request_id")

    run = sub.add_parser("run", help="Run the daemon until interrupted")
    run.add_argument("--listen", action="store_true", help="Poll StakeStore for stake intents")

    encrypt = sub.add_parser("encrypt-key", help="Encrypt a signer key with an SSH public key")
    encrypt.add_argument("--output", default="secrets.age")
    encrypt.add_argument("--public-key", default=DEFAULT_SSH_PUBLIC_KEY)

    return parser


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


async def _run_command(args: argparse.Namespace, system: StakingSystem) -> None:
    if args.command == "run":
        async with system:
            print(f"Staking daemon running with {len(system.catalog)} markets. Ctrl+C to stop.")
            while True:
                await asyncio.sleep(3600)

    await system.load_markets()
    # Transition events reach the audit table only while the bus runs
    await system.event_bus.start()
    try:
        await _one_shot(args, system)
    finally:
        await system.event_bus.stop()
        system.client.close()


async def _one_shot(args: argparse.Namespace, system: StakingSystem) -> None:
    if args.command == "markets":
        _print_json([m.model_dump() for m in system.catalog.markets()])

    elif args.command == "stake":
        kwargs = {}
        if args.request_id:
            kwargs["request_id"] = args.request_id
        request = StakeRequest(
            user_address=args.user,
            input_token_address=args.token,
            input_amount=args.amount,
            target_market=args.market,
            slippage_tolerance=(
                system.config.default_slippage if args.slippage is None else args.slippage
            ),
            **kwargs,
        )
        state = await system.orchestrator.execute(request)
        _print_json(state.model_dump())

    elif args.command == "status":
        state = system.get_workflow_status(args.request_id)
        _print_json({"state": state.model_dump(), "events": system.db.get_events(args.request_id)})

    elif args.command == "holdings":
        holdings = await system.get_holdings(args.address)
        _print_json([h.model_dump() for h in holdings])

    elif args.command == "redeem":
        tx = await system.build_redemption(args.address, args.market, TokenType(args.token_type))
        _print_json(tx.to_dict())

    elif args.command == "reconcile":
        _print_json((await system.reconcile(args.request_id)).model_dump())

    elif args.command == "cancel":
        _print_json((await system.cancel(args.request_id)).model_dump())


def main(argv=None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    if args.command == "encrypt-key":
        secret = getpass.getpass("Signer private key: ")
        try:
            address = encrypt_signer_key(secret, args.output, args.public_key)
        except (FileNotFoundError, ValueError) as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        print(f"Key for {address} encrypted to {args.output}")
        return 0

    try:
        config = load_config(args.env_file, secrets_file=args.secrets_file)
        logger = setup_logger(
            "stakestore",
            level=config.log_level,
            log_file=config.log_file,
            json_format=config.log_json,
        )
        system = StakingSystem(
            config, listen_for_intents=getattr(args, "listen", False), logger=logger
        )
        asyncio.run(_run_command(args, system))
        return 0
    except KeyboardInterrupt:
        print("\nShutting down...")
        return 0
    except (StakeStoreError, RuntimeError, ValueError) as e:
        print(f"\nError: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
