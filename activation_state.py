import json
import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ValidationError

STATE_FILENAME = "activation.state"


class ClientActivationState(BaseModel):
    active: bool
    licenseKey: str = ""
    timestamp: int  # epoch milliseconds of the last successful server contact
    machineId: Optional[str] = None


class ActivationStateFile:
    """
    The installation's last known activation result, stored as JSON.

    A missing file means the installation was never activated (or was reset).
    """

    def __init__(self, path: Path, logger: Optional[logging.Logger] = None):
        self.path = Path(path)
        self.logger = logger or logging.getLogger(__name__)

    def load(self) -> Optional[ClientActivationState]:
        if not self.path.exists():
            return None
        try:
            return ClientActivationState.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as exc:
            self.logger.warning("Unreadable activation state at %s: %s", self.path, exc)
            return None

    def save(self, state: ClientActivationState) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(state.model_dump(), indent=2), encoding="utf-8")

    def delete(self) -> bool:
        """Remove the file; returns False when there was nothing to delete."""
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        return True
