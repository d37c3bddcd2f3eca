from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

from phone_importer.config.loader import DEFAULT_CONFIG_PATH, ConfigError, PipelineConfig, load_config
from phone_importer.db.store import InMemoryPhoneStore, PhoneStore, PostgresPhoneStore, StoreError
from phone_importer.logging.init import log_summary, setup_logging
from phone_importer.services.orchestrator import ProcessingError, process_directory
from phone_importer.services.phone import NationalFormat, PhoneNormalizer
from phone_importer.services.summary import render_summary_line
from phone_importer.services.synchronizer import STORE_WIDE_ID, RetryPolicy, Synchronizer

"""CLI entrypoint: ``python -m phone_importer.cli``.

Flow:
- load ``.env`` (overrides the process environment) and the YAML config
- open the PostgreSQL store, or an in-memory store for --dry-run /
  DISABLE_DB_CONNECT=1
- import every workbook of the source directory
- optionally consolidate and/or revalidate the validated store
- print the SUMMARY line

Exit codes: 0 everything imported, 2 some workbook or record failed,
1 fatal (config, database connection, source directory).
"""

EXIT_SUCCESS_ALL = 0
EXIT_PARTIAL_FAILURE = 2
EXIT_FATAL = 1


def _load_env_file(path: Path, override: bool = True) -> None:
    """Load ``.env``; its values win over variables already set."""
    if path.exists():
        load_dotenv(dotenv_path=path, override=override)


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        prog="phone_importer", description="Import phone workbooks into the raw and validated stores"
    )
    p.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH, help="Path to the YAML config")
    p.add_argument("--debug", action="store_true", help="Enable debug logging")
    p.add_argument("--dry-run", action="store_true", help="Use an in-memory store; nothing is persisted")
    p.add_argument(
        "--consolidate", action="store_true", help="Fill blank company fields across rows sharing a phone"
    )
    p.add_argument(
        "--revalidate", action="store_true", help="Recompute the validation status of every stored phone"
    )
    return p.parse_args(argv)


def _open_store(cfg: PipelineConfig, dry_run: bool, logger: logging.Logger) -> PhoneStore:
    if dry_run or os.getenv("DISABLE_DB_CONNECT") == "1":
        logger.info("mode=dry-run (in-memory store)")
        return InMemoryPhoneStore()
    store = PostgresPhoneStore.connect(cfg.database, page_size=cfg.sync.raw_page_size)
    store.ensure_schema()
    logger.info("mode=live (PostgreSQL)")
    return store


def _maintenance(cfg: PipelineConfig, store: PhoneStore, args: argparse.Namespace) -> int:
    """Run the requested store-wide passes; returns the number of failed rows.

    Raises:
        StoreError: the validated store could not be read at all.
    """
    sync = Synchronizer(
        store,
        PhoneNormalizer(NationalFormat.from_config(cfg.national_format)),
        retry=RetryPolicy.from_config(cfg.sync),
    )
    failed = 0
    passes = []
    if args.consolidate:
        passes.append(sync.consolidate)
    if args.revalidate:
        passes.append(sync.revalidate_all)
    for run in passes:
        failures = run().failures
        for f in failures:
            if f.record_id == STORE_WIDE_ID:
                raise StoreError(f.message, retryable=f.retryable)
        failed += len(failures)
    return failed


def main(argv: list[str] | None = None) -> int:
    # an explicit [] must not fall back to sys.argv (pytest arguments)
    if argv is None:
        argv = sys.argv[1:]
    args = _parse_args(argv)

    logger = setup_logging(logging.DEBUG if args.debug else logging.INFO)
    logger.debug("debug mode enabled")

    _load_env_file(Path(".env"), override=True)

    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        logger.error(f"config: {e}")
        return EXIT_FATAL

    try:
        store = _open_store(cfg, args.dry_run, logger)
    except StoreError as e:
        logger.error(f"database: {e}")
        return EXIT_FATAL

    try:
        logger.info(f"Processing workbooks from: {cfg.source_directory}")
        try:
            result = process_directory(cfg, store)
        except ProcessingError as e:
            logger.error(f"processing: {e}")
            return EXIT_FATAL
        try:
            maintenance_failures = _maintenance(cfg, store, args)
        except StoreError as e:
            logger.error(f"database: {e}")
            return EXIT_FATAL
    finally:
        if isinstance(store, PostgresPhoneStore):
            store.close()

    summary_line = render_summary_line(result)
    # log_summary adds the "SUMMARY " label itself
    log_summary(summary_line.removeprefix("SUMMARY "))

    if result.failed_files or result.partial_files or maintenance_failures:
        return EXIT_PARTIAL_FAILURE
    return EXIT_SUCCESS_ALL


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
