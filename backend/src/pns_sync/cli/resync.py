"""CLI command for rescanning a chain from a given block.

Rewinds the chain's scan checkpoint; the running scan worker picks up from
there on its next tick. Events already applied are skipped on replay, so a
resync only fills in what was missed.

Usage:
    python -m pns_sync.cli.resync --chain CHAIN --from-block N [OPTIONS]

Examples:
    # Rescan the primary chain from block 12345000
    python -m pns_sync.cli.resync --chain primary --from-block 12345000

    # Show what would change without writing
    python -m pns_sync.cli.resync --chain mirror --from-block 900 --dry-run
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace

import structlog

from pns_sync.core import timezone  # noqa: F401
from pns_sync.core.config import Settings, configure_logging
from pns_sync.core.database import setup_db_session
from pns_sync.models.domain import ChainSide
from pns_sync.services.scanner import MIRROR_GROUP, PRIMARY_GROUP
from pns_sync.uow import create_uow_factory

logger = structlog.get_logger()

GROUPS = {ChainSide.PRIMARY: PRIMARY_GROUP, ChainSide.MIRROR: MIRROR_GROUP}


def parse_args(argv: list[str] | None = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(description="Rewind a chain's scan checkpoint and rescan")

    parser.add_argument(
        "--chain",
        required=True,
        choices=[c.value for c in ChainSide],
        help="Chain to rescan",
    )

    parser.add_argument(
        "--from-block",
        type=int,
        required=True,
        help="First block to scan again",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report the current checkpoint without modifying it",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )

    return parser.parse_args(argv)


async def resync(uow_factory, chain: ChainSide, from_block: int, dry_run: bool) -> int:
    """Rewind the checkpoint of ``chain`` to just before ``from_block``.

    Returns:
        Exit code: 0 (success), 1 (error)
    """
    if from_block < 0:
        logger.error("resync.error", message="--from-block must be non-negative")
        return 1

    group = GROUPS[chain]
    async with await uow_factory() as uow:
        checkpoint = await uow.checkpoints.get(chain, group)
        current = checkpoint.last_processed_block if checkpoint else None

        if dry_run:
            replayed = []
            if current is not None and current >= from_block:
                replayed = await uow.processed_events.get_by_block_range(
                    chain, from_block, current
                )
            logger.info(
                "resync.dry_run",
                chain=chain.value,
                current_checkpoint=current,
                new_checkpoint=max(from_block - 1, 0),
                already_applied_in_range=len(replayed),
                message="DRY RUN - No changes made",
            )
            return 0

        previous = await uow.checkpoints.reset(chain, group, from_block)

    logger.info(
        "resync.checkpoint_reset",
        chain=chain.value,
        group=group,
        previous_checkpoint=previous,
        new_checkpoint=max(from_block - 1, 0),
    )
    return 0


async def async_main(argv: list[str] | None = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (success), 1 (error)
    """
    args = parse_args(argv)
    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)

    try:
        session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
        return await resync(
            create_uow_factory(session_factory),
            ChainSide(args.chain),
            args.from_block,
            args.dry_run,
        )
    except Exception as e:
        logger.error("resync.fatal_error", error=str(e), exc_info=True)
        return 1


def main() -> int:
    """Synchronous wrapper for async main."""
    return asyncio.run(async_main())


if __name__ == "__main__":
    sys.exit(main())
