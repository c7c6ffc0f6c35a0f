#!/usr/bin/env python3
"""
Clementine withdrawal tool

Withdraws cBTC from Citrea to Bitcoin:
- Locks a 546 sat marker UTXO on Bitcoin
- Burns 10 cBTC on Citrea against that marker
- Offers a SINGLE|ANYONECANPAY signed payout to the operators at decreasing
  amounts until one of them pays
Progress is written to a backup file after every step, so any failure can be
resumed with the `resume` command.
"""

import argparse
import logging
import sys
from typing import Optional, List

from web3 import Web3

from .bitcoin_rpc import BitcoinWallet
from .checkpoint import CheckpointStore
from .citrea import CitreaClient
from .config import Config, DEFAULT_CONFIG_PATH, load_config
from .errors import WithdrawalError, ErrorKind
from .negotiator import PayoutNegotiator
from .withdrawal import WithdrawalState, WithdrawalStateMachine, initiate_withdrawal, state_of

logger = logging.getLogger(__name__)

PROG = "clementine-withdraw"


def setup_logging(debug: bool = False, log_file: Optional[str] = None):
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True,
    )
    # web3 and urllib3 are chatty at DEBUG
    for name in ("urllib3", "web3"):
        logging.getLogger(name).setLevel(logging.INFO if debug else logging.WARNING)


def resume_instructions(backup_file) -> str:
    return (
        "To be able to resume your withdrawal process, use this command:\n"
        f"  {PROG} resume --backup-file-path {backup_file}\n"
        f"  {PROG} resume --help\n"
        "for more information."
    )


def confirm(prompt: str) -> bool:
    answer = input(f"{prompt} (y/n) ")
    return answer.strip().lower() == "y"


def build_state_machine(config: Config, store: CheckpointStore,
                        wallet: Optional[BitcoinWallet] = None) -> WithdrawalStateMachine:
    wallet = wallet or BitcoinWallet.from_config(config)
    return WithdrawalStateMachine(
        config,
        store,
        wallet,
        CitreaClient.from_config(config),
        PayoutNegotiator.from_config(config, wallet),
    )


def run_withdrawal(config: Config, store: CheckpointStore,
                   wallet: Optional[BitcoinWallet] = None) -> int:
    """Run the state machine, printing resume instructions on failure"""
    try:
        with store.lock():
            machine = build_state_machine(config, store, wallet)

            if config.confirm and state_of(store.load()) in (WithdrawalState.MARKER_PENDING,
                                                              WithdrawalState.MARKER_CREATED):
                if not confirm("This operation will create a dust utxo of 546 sats and burn 10 cBTC "
                               "and start the auction. Your withdrawal details are saved and you can "
                               "use them later to continue. Do you want to proceed?"):
                    logger.info("Operation cancelled.")
                    logger.info(resume_instructions(store.path))
                    return 1

            result = machine.run()
    except WithdrawalError as e:
        logger.error(f"Error in withdrawal process: {e}")
        if e.kind == ErrorKind.INSUFFICIENT_FUNDS:
            logger.error(f"Top up your {e.context.get('chain')} wallet "
                         f"(balance: {e.context.get('balance')}) and resume.")
        logger.info("Resume the withdrawal process using the following command:")
        logger.info(f"  {PROG} resume --backup-file-path {store.path}")
        return 1

    logger.info("=" * 70)
    logger.info("✓ Withdrawal finished")
    logger.info("=" * 70)
    logger.info(f"  Marker UTXO: {result.record.marker_outpoint}")
    logger.info(f"  Withdrawal index: {result.record.payout_index}")
    if result.payout and result.payout.receipt is not None:
        logger.info(f"  Operator receipt: {result.payout.receipt}")
    logger.info(f"  Backup file: {store.path}")
    return 0


def cmd_withdraw(config: Config, args) -> int:
    wallet = BitcoinWallet.from_config(config)
    try:
        store, _ = initiate_withdrawal(config, wallet, args.withdrawal_address)
    except WithdrawalError as e:
        logger.error(f"Could not start withdrawal: {e}")
        return 1

    logger.info(resume_instructions(store.path))
    return run_withdrawal(config, store, wallet)


def cmd_resume(config: Config, args) -> int:
    store = CheckpointStore(args.backup_file_path)
    # lock() would create the directory and a stray .lock file for a mistyped path
    if not store.exists():
        logger.error(f"Backup file not found: {store.path}")
        return 1
    return run_withdrawal(config, store)


def cmd_balances(config: Config, args) -> int:
    try:
        btc_balance = BitcoinWallet.from_config(config).get_balance()
        citrea = CitreaClient.from_config(config)
        cbtc_balance = Web3.from_wei(citrea.get_balance(), "ether")
    except WithdrawalError as e:
        logger.error(f"Error getting balances: {e}")
        return 1
    logger.info(f"BTC Balance: {btc_balance} BTC")
    logger.info(f"cBTC Balance ({citrea.address}): {cbtc_balance} cBTC")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=PROG,
        description='Withdraw funds from Citrea to Bitcoin',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Examples:
  # Start a new withdrawal
  {PROG} withdraw --withdrawal-address tb1p...

  # Resume from a previous failure
  {PROG} resume --backup-file-path backups/tb1p....json

  # Show wallet balances on both chains
  {PROG} balances
        """
    )

    parser.add_argument('--config', default=DEFAULT_CONFIG_PATH,
                        help='Path to JSON config file')
    parser.add_argument('--bitcoin-rpc-url', help='Bitcoin RPC URL')
    parser.add_argument('--bitcoin-rpc-user', help='Bitcoin RPC user')
    parser.add_argument('--bitcoin-rpc-password', help='Bitcoin RPC password')
    parser.add_argument('--citrea-rpc-url', help='Citrea RPC URL')
    parser.add_argument('--citrea-private-key',
                        help='Citrea private key (or set CITREA_PRIVATE_KEY)')
    parser.add_argument('--operator-endpoints',
                        help='Comma separated operator withdrawal endpoints')
    parser.add_argument('--debug', action='store_true',
                        help='Enable debug logging')
    parser.add_argument('--log-file',
                        help='Also write logs to this file')

    subparsers = parser.add_subparsers(dest='command', required=True)

    withdraw = subparsers.add_parser('withdraw', help='Start a new withdrawal')
    withdraw.add_argument('-a', '--withdrawal-address', required=True,
                          help='Withdrawal address on Bitcoin')
    withdraw.add_argument('-b', '--backup-folder-path',
                          help='Folder for the withdrawal backup file')
    withdraw.add_argument('-y', '--yes', action='store_true',
                          help='Do not ask for confirmation before spending')

    resume = subparsers.add_parser('resume', aliases=['resumewithdraw'],
                                   help='Resume a withdrawal from a backup file')
    resume.add_argument('-b', '--backup-file-path', required=True,
                        help='Backup file path')

    for sub in (withdraw, resume):
        sub.add_argument('-m', '--min-withdrawal-amount',
                         help='Minimum withdrawal amount in BTC (default: 9.99)')
        sub.add_argument('-p', '--precision',
                         help='Amount step between rounds in BTC (default: 0.001)')

    subparsers.add_parser('balances', help='Show BTC and cBTC balances')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(args.debug, args.log_file)

    overrides = {
        'bitcoin_rpc_url': args.bitcoin_rpc_url,
        'bitcoin_rpc_user': args.bitcoin_rpc_user,
        'bitcoin_rpc_password': args.bitcoin_rpc_password,
        'citrea_rpc_url': args.citrea_rpc_url,
        'citrea_private_key': args.citrea_private_key,
        'operator_endpoints': args.operator_endpoints,
        'backup_dir': getattr(args, 'backup_folder_path', None),
        'min_withdrawal_amount': getattr(args, 'min_withdrawal_amount', None),
        'precision': getattr(args, 'precision', None),
    }
    if args.command == 'withdraw':
        overrides['confirm'] = not args.yes

    try:
        config = load_config(args.config, overrides)
    except WithdrawalError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    missing = config.missing_connection_settings()
    if missing:
        logger.error(f"Error: {', '.join(missing)} required for this command.")
        return 1

    commands = {
        'withdraw': cmd_withdraw,
        'resume': cmd_resume,
        'resumewithdraw': cmd_resume,
        'balances': cmd_balances,
    }
    return commands[args.command](config, args)


if __name__ == '__main__':
    sys.exit(main())
