"""
Deployment artifacts: values produced by one deployment step for later steps
and later runs, stored per deployment target.
"""
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

ARTIFACTS_FILE_NAME = "artifacts.json"


class ArtifactStore:
    """JSON-file backed artifact store scoped to one deployment target."""

    def __init__(self, path: str, target: str):
        self.path = Path(path)
        self.target = target
        self.state = self._load_state()

    def _load_state(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        with open(self.path, 'r', encoding='utf-8') as f:
            return json.load(f)

    def _save_state(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w', encoding='utf-8') as f:
            json.dump(self.state, f, indent=2, sort_keys=True)

    @property
    def values(self) -> Dict[str, Any]:
        return self.state.setdefault(self.target, {})

    def save(self, name: str, value: Any) -> None:
        self.values[name] = value
        self._save_state()
        logger.debug(f"saved artifact {name} for {self.target}")

    def get(self, name: str, default: Optional[Any] = None) -> Any:
        return self.values.get(name, default)

    def delete(self, name: str) -> None:
        if name in self.values:
            del self.values[name]
            self._save_state()


def load_artifacts(deploy_root: str, target: str) -> ArtifactStore:
    return ArtifactStore(str(Path(deploy_root) / ARTIFACTS_FILE_NAME), target)
