"""Registry of running Orcha instances, shared by every CLI invocation on the machine."""

from __future__ import annotations

import hashlib
import logging
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from pydantic import ValidationError

from ..config import get_settings
from .files import atomic_write_json, read_json
from .models import REGISTRY_VERSION, InstanceInfo

logger = logging.getLogger(__name__)

INSTANCE_PREFIX = "orcha"
_HASH_LENGTH = 6


def _slugify(text: str, max_len: int = 40) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    if len(slug) > max_len:
        slug = slug[:max_len].rstrip("-")
    return slug or "repo"


def generate_instance_id(repo_path: str | Path) -> str:
    """Derive the base instance id from the repository's directory name."""

    return f"{INSTANCE_PREFIX}-{_slugify(Path(repo_path).expanduser().resolve().name)}"


def generate_instance_id_with_hash(repo_path: str | Path) -> str:
    """Derive the collision-safe id by suffixing a hash of the absolute path."""

    absolute = str(Path(repo_path).expanduser().resolve())
    digest = hashlib.sha256(absolute.encode("utf-8")).hexdigest()[:_HASH_LENGTH]
    return f"{generate_instance_id(absolute)}-{digest}"


class InstanceRegistry:
    """Reads and writes ``instances.json`` with whole-file read-modify-write."""

    def __init__(
        self,
        path: Path,
        *,
        clock: Callable[[], datetime] | None = None,
        pid: int | None = None,
        status_root: Path | None = None,
    ) -> None:
        self._path = Path(path)
        self._status_root = Path(status_root) if status_root is not None else None
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._pid = pid if pid is not None else os.getpid()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> dict[str, InstanceInfo]:
        document = read_json(self._path)
        if not isinstance(document, dict):
            return {}

        instances: dict[str, InstanceInfo] = {}
        for instance_id, payload in (document.get("instances") or {}).items():
            try:
                instances[instance_id] = InstanceInfo.model_validate(payload)
            except ValidationError as exc:
                logger.warning(
                    "Dropping malformed instance entry",
                    extra={"instance_id": instance_id, "error": str(exc)},
                )
        return instances

    def save(self, instances: dict[str, InstanceInfo]) -> None:
        atomic_write_json(
            self._path,
            {
                "version": REGISTRY_VERSION,
                "instances": {key: info.to_document() for key, info in instances.items()},
            },
        )

    def register_instance(self, repo_path: str | Path, session_count: int) -> InstanceInfo:
        instances = self.load()
        absolute = str(Path(repo_path).expanduser().resolve())

        instance_id = generate_instance_id(absolute)
        existing = instances.get(instance_id)
        if existing is not None and existing.repo_path != absolute:
            instance_id = generate_instance_id_with_hash(absolute)

        for key in [key for key, info in instances.items() if info.repo_path == absolute]:
            del instances[key]

        instance = InstanceInfo(
            instance_id=instance_id,
            repo_path=absolute,
            pane_group=instance_id,
            pid=self._pid,
            started_at=self._clock().isoformat(),
            session_count=session_count,
        )
        instances[instance_id] = instance
        self.save(instances)

        logger.info(
            "Registered instance",
            extra={"instance_id": instance_id, "repo_path": absolute, "sessions": session_count},
        )
        return instance

    def unregister_instance(self, instance_id: str) -> bool:
        instances = self.load()
        if instance_id not in instances:
            return False
        del instances[instance_id]
        self.save(instances)
        logger.info("Unregistered instance", extra={"instance_id": instance_id})
        return True

    def update_session_count(self, instance_id: str, session_count: int) -> None:
        instances = self.load()
        instance = instances.get(instance_id)
        if instance is None:
            return
        instance.session_count = session_count
        self.save(instances)

    def get_instance(self, instance_id: str) -> InstanceInfo | None:
        return self.load().get(instance_id)

    def get_instance_by_path(self, repo_path: str | Path) -> InstanceInfo | None:
        absolute = str(Path(repo_path).expanduser().resolve())
        for instance in self.load().values():
            if instance.repo_path == absolute:
                return instance
        return None

    def list_instances(self) -> list[InstanceInfo]:
        return list(self.load().values())

    def status_dir(self, instance_id: str) -> Path:
        """Directory where the instance's agents write their status files."""

        if self._status_root is None:
            return get_settings().status_dir(instance_id)
        return self._status_root / instance_id / "agents"

    def find_instance_from_cwd(self, cwd: str | Path | None = None) -> InstanceInfo | None:
        """Walk up from ``cwd`` and return the first registered repository containing it."""

        instances = self.load()
        by_path = {instance.repo_path: instance for instance in instances.values()}
        current = Path(cwd if cwd is not None else os.getcwd()).expanduser().resolve()
        for candidate in (current, *current.parents):
            match = by_path.get(str(candidate))
            if match is not None:
                return match
        return None

    def cleanup_stale_instances(self, pane_group_exists: Callable[[str], bool]) -> list[str]:
        """Drop instances whose pane group is gone.

        Liveness is pane-group existence only; the registering pid usually
        exits after handing control to the pane driver.
        """

        instances = self.load()
        removed = [
            instance_id
            for instance_id, instance in instances.items()
            if not pane_group_exists(instance.pane_group)
        ]
        if removed:
            for instance_id in removed:
                del instances[instance_id]
            self.save(instances)
            logger.info("Removed stale instances", extra={"instance_ids": removed})
        return removed


__all__ = [
    "INSTANCE_PREFIX",
    "InstanceRegistry",
    "generate_instance_id",
    "generate_instance_id_with_hash",
]
