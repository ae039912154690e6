from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Dict

from pydantic import ValidationError

from phonics_engine.config import get_settings
from phonics_engine.db.session import init_database, session_scope
from phonics_engine.progression_state import ProgressionState
from phonics_engine.repositories.progression_states import progression_states


logger = logging.getLogger("backfill")


def _load_json(path: Path) -> Dict[str, object] | list[object]:
    with path.open(encoding="utf-8") as handle:
        return json.load(handle)


def backfill_progress(path: Path, *, overwrite: bool = False, dry_run: bool = False) -> int:
    """Copy legacy JSON progression documents into the database.

    Existing rows are kept unless ``overwrite`` is set or the legacy copy is newer.
    """
    if not path.exists():
        logger.info("No legacy progression store found at %s", path)
        return 0
    payload = _load_json(path)
    records = payload.values() if isinstance(payload, dict) else payload
    imported = 0
    with session_scope(commit=not dry_run) as session:
        for entry in records:
            try:
                state = ProgressionState.model_validate(entry)
            except ValidationError as exc:
                logger.warning("Skipping invalid progression payload: %s", exc)
                continue
            existing = progression_states.get(session, state.user_id)
            if existing is not None and not overwrite and existing.last_updated >= state.last_updated:
                logger.info("Keeping database progression for %s; legacy copy is not newer", state.user_id)
                continue
            if dry_run:
                logger.info("Would import progression for %s (xp=%d)", state.user_id, state.xp)
            else:
                progression_states.upsert(session, state)
            imported += 1
    logger.info("%s %d progression states", "Would import" if dry_run else "Imported", imported)
    return imported


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Backfill the legacy JSON progression store into the database.")
    parser.add_argument("--source", type=Path, default=None, help="Legacy JSON store (defaults to PHONICS_LEGACY_STORE_PATH).")
    parser.add_argument("--overwrite", action="store_true", help="Replace database rows even when they are newer.")
    parser.add_argument("--dry-run", action="store_true", help="Report what would be imported without writing.")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    args = parse_args(argv)
    source = args.source or get_settings().legacy_store_path
    init_database()
    total = backfill_progress(source, overwrite=args.overwrite, dry_run=args.dry_run)
    logger.info("Backfill completed: %d progression states from %s", total, source)


if __name__ == "__main__":
    main()
