import json
import logging
import os
import tempfile
import uuid
from pathlib import Path
from typing import Optional, Union

from ..utils.exceptions import CheckpointError
from .state import MigrationState, state_from_dict, state_to_dict

logger = logging.getLogger(__name__)

DEFAULT_STATE_DIR = Path.home() / ".tree-migrator" / "state"


class CheckpointStore:
    """Durable home of one migration's state, identified by ``state_id``.

    Saves go to a temporary file in the same directory which then atomically
    replaces the checkpoint, so a reader never sees a half-written record.
    """

    def __init__(
        self,
        state_id: Optional[str] = None,
        state_dir: Optional[Path] = None,
    ) -> None:
        self._state_id = state_id or uuid.uuid4().hex
        self._state_dir = Path(state_dir) if state_dir else DEFAULT_STATE_DIR

    @property
    def state_id(self) -> str:
        return self._state_id

    @property
    def checkpoint_path(self) -> Path:
        return self._state_dir / f"checkpoint_{self._state_id}.json"

    def exists(self) -> bool:
        return self.checkpoint_path.exists()

    def load(self) -> Optional[MigrationState]:
        path = self.checkpoint_path
        if not path.exists():
            logger.info("No checkpoint found at %s", path)
            return None

        try:
            raw = path.read_text(encoding="utf-8")
            data = json.loads(raw)
            state = state_from_dict(data)
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning("Ignoring unusable checkpoint %s: %s", path, e)
            return None

        logger.info(
            "Loaded checkpoint %s: %d pending, %d completed",
            path,
            len(state.pending_tasks),
            len(state.completed_paths),
        )
        return state

    def load_matching(
        self,
        source_root: Union[str, Path],
        dest_root: Union[str, Path],
    ) -> Optional[MigrationState]:
        state = self.load()
        if state is None:
            return None
        if not state.matches(source_root, dest_root):
            logger.info(
                "Checkpoint %s belongs to %s -> %s, not %s -> %s; ignoring",
                self.checkpoint_path,
                state.source_root,
                state.dest_root,
                source_root,
                dest_root,
            )
            return None
        return state

    def save(self, state: MigrationState) -> None:
        path = self.checkpoint_path
        state.touch()
        payload = json.dumps(state_to_dict(state), indent=2) + "\n"

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{path.name}.", suffix=".tmp", dir=path.parent
            )
        except OSError as e:
            raise CheckpointError(
                f"Failed to create checkpoint file in {path.parent}: {e}",
                path=str(path),
            ) from e

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except OSError as e:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise CheckpointError(
                f"Failed to write checkpoint {path}: {e}", path=str(path)
            ) from e

        logger.debug(
            "Checkpoint saved to %s (%d pending)", path, len(state.pending_tasks)
        )

    def delete(self) -> None:
        try:
            self.checkpoint_path.unlink()
        except FileNotFoundError:
            return
        except OSError as e:
            raise CheckpointError(
                f"Failed to delete checkpoint {self.checkpoint_path}: {e}",
                path=str(self.checkpoint_path),
            ) from e
        logger.info("Checkpoint %s deleted", self.checkpoint_path)
