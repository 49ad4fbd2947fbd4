"""Persistence of the single live RunState."""
import logging
import threading
import uuid
from pathlib import Path
from typing import Callable

from hive.orchestration.models import Iteration, RunState
from hive.orchestration.storage import read_json, write_json

logger = logging.getLogger(__name__)


class RunStateStore:
    """Owns `<hive_dir>/state.json`.

    Every mutation goes through `update`, which holds a lock across the
    read-modify-write so concurrent writers cannot interleave.
    """

    FILENAME = "state.json"

    def __init__(self, hive_dir: Path):
        self.hive_dir = hive_dir
        self.path = hive_dir / self.FILENAME
        self._lock = threading.RLock()

    def exists(self) -> bool:
        return self.path.exists()

    def init(
        self,
        objective: str,
        run_id: str | None = None,
        epic_id: str = "",
        max_attempts: int = 3,
    ) -> RunState:
        """Start a fresh run, replacing any previous live state."""
        state = RunState(
            run_id=run_id or uuid.uuid4().hex[:8],
            objective=objective,
            epic_id=epic_id,
            iteration=Iteration(max_attempts=max_attempts),
        )
        self.save(state)
        logger.info("Initialized run %s", state.run_id)
        return state

    def load(self) -> RunState | None:
        """Load the live state, or None when no run has been started."""
        with self._lock:
            if not self.path.exists():
                return None
            return RunState.from_dict(read_json(self.path))

    def save(self, state: RunState) -> None:
        with self._lock:
            write_json(self.path, state.to_dict())

    def update(self, mutate: Callable[[RunState], None]) -> RunState:
        """Apply `mutate` to the live state and persist it atomically."""
        with self._lock:
            state = self.load()
            if state is None:
                raise RuntimeError("No live run state; start a run first")
            mutate(state)
            self.save(state)
            return state
