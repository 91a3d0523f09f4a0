# __main__.py
# Description: Command line entry point: loads the config, sets up logging and runs the sync controller.
#
# Imports
import argparse
import asyncio
import hashlib
import os
import sys
from pathlib import Path
from typing import List, Optional
#
# 3rd-Party Imports
import httpx
from loguru import logger
#
# Local Imports
from .config import get_cli_setting, get_sync_config, get_sync_db_path, load_settings
from .Crypto.Field_Encryption import AESGCMEncryptionService, EncryptionService
from .DB.Sync_DB import SyncDatabase
from .Logging_Config import configure_logging_from_settings
from .Sync.Sync_Controller import SyncController
#
#######################################################################################################################
#
# Functions:

MODES = ("once", "full", "auto")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="asset-sync", description="Sync the local asset tables with the sync service")
    parser.add_argument("mode", nargs="?", choices=MODES, default="once",
                        help="once: one incremental sync; full: one full sync; auto: poll until interrupted")
    parser.add_argument("--config", type=Path, default=None, help="Path to config.toml")
    parser.add_argument("--user-id", default="default", help="Signed-in user; also salts the field key")
    parser.add_argument("--log-level", default=None, help="Overrides [logging] log_level")
    return parser.parse_args(argv)


def build_encryption(user_id: str) -> Optional[EncryptionService]:
    """Derives the field key from the passphrase in the configured environment variable, if set."""
    env_name = get_cli_setting("encryption", "passphrase_env", "ASSET_SYNC_PASSPHRASE")
    passphrase = os.environ.get(env_name)
    if not passphrase:
        logger.warning(f"{env_name} is not set; sync runs will be skipped until a passphrase is provided")
        return None
    salt = hashlib.sha256(f"asset-sync:{user_id}".encode("utf-8")).digest()[:16]
    return AESGCMEncryptionService.from_passphrase(passphrase, salt)


async def main_async(args: argparse.Namespace, transport: Optional[httpx.AsyncBaseTransport] = None) -> int:
    settings = load_settings(force_reload=True, config_path=args.config)
    configure_logging_from_settings(args.log_level)

    db = SyncDatabase(get_sync_db_path())
    controller: Optional[SyncController] = None
    try:
        controller = SyncController.from_config(
            db, get_sync_config(settings), build_encryption(args.user_id), transport=transport)
        controller.enable_sync(args.user_id)

        if args.mode == "auto":
            await controller.start_auto_sync()
            logger.info("Auto sync running; press Ctrl+C to stop")
            await asyncio.Event().wait()
            return 0
        ok = await (controller.full_sync_now() if args.mode == "full" else controller.sync_now())
        status = controller.state.get_current_status()
        logger.info(f"{args.mode} sync {'succeeded' if ok else 'failed'}: {status.message}")
        return 0 if ok else 1
    finally:
        if controller is not None:
            await controller.close()
        db.close_connection()


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        return asyncio.run(main_async(args))
    except KeyboardInterrupt:
        logger.info("Sync stopped")
        return 130


if __name__ == "__main__":
    sys.exit(main())

#
# End of __main__.py
#######################################################################################################################
