"""
state_store.py -- JSON snapshot of the grid for crash recovery.

One file, fully rewritten on every save (write tmp, then rename over the
old one) so a crash mid-write leaves either the old or the new snapshot,
never half of each.  Decimals are stored as strings.

Reads never raise: a missing, unreadable or foreign snapshot means
"start with an empty grid".
"""

import json
import logging
import os

import config
import grid_machine as gm

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


class StateStore:
    def __init__(self, path: str = None):
        self.path = path or config.STATE_FILE

    def load(self) -> gm.GridState:
        if not os.path.exists(self.path):
            logger.info("No state file found at %s -- starting fresh", self.path)
            return gm.GridState()

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                snapshot = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Failed to read state file %s: %s -- starting fresh", self.path, e)
            return gm.GridState()

        if not isinstance(snapshot, dict) or snapshot.get("schema_version") != SCHEMA_VERSION:
            version = snapshot.get("schema_version") if isinstance(snapshot, dict) else None
            logger.warning("State file %s has schema version %r (want %d) -- starting fresh",
                           self.path, version, SCHEMA_VERSION)
            return gm.GridState()

        try:
            state = gm.from_dict(snapshot)
        except (KeyError, TypeError, ValueError, AttributeError, ArithmeticError) as e:
            logger.warning("State file %s is malformed (%s) -- starting fresh", self.path, e)
            return gm.GridState()

        problems = gm.check_invariants(state)
        if problems:
            logger.warning("State file %s violates invariants (%s) -- starting fresh",
                           self.path, "; ".join(problems))
            return gm.GridState()

        logger.info("Restored grid: %d levels, pnl=%s, fees=%s, round trips=%d",
                    len(state.levels), state.total_realized_pnl,
                    state.total_fees_paid, state.round_trips)
        return state

    def save(self, state: gm.GridState) -> None:
        snapshot = {"schema_version": SCHEMA_VERSION, **gm.to_dict(state)}
        tmp_path = self.path + ".tmp"
        try:
            directory = os.path.dirname(self.path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(snapshot, f, indent=2, sort_keys=True)
            os.replace(tmp_path, self.path)
            logger.debug("State saved to %s", self.path)
        except OSError as e:
            logger.error("Failed to save state to %s: %s", self.path, e)
            raise
