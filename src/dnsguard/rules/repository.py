"""Rule repository collaborators and the background sync thread.

Brief:
  The core never owns persistent rule storage. It reads rules through the
  RuleRepository interface at startup and on each sync tick, and optionally
  writes the current snapshot back after administrative mutations. The
  bundled FileRuleRepository keeps the rules in a single YAML or JSON
  document.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from typing import Any, Dict, List, Optional

import yaml

from ..errors import PersistenceError, ValidationError
from .store import DEFAULT_CATEGORIES, MODE_BLACKLIST, RuleSnapshot, RuleStore

logger = logging.getLogger(__name__)


class RuleRepository:
    """Base interface for persistent rule sources.

    Subclasses implement the getters; save() is optional and defaults to a
    no-op so read-only sources can be plugged in unchanged. Implementations
    raise PersistenceError when the backing store is unreachable.
    """

    def get_blocked_domains(self) -> List[str]:
        raise NotImplementedError(
            "RuleRepository.get_blocked_domains() must be implemented by a subclass"
        )

    def get_allowed_domains(self) -> List[str]:
        raise NotImplementedError(
            "RuleRepository.get_allowed_domains() must be implemented by a subclass"
        )

    def get_categories(self) -> Dict[str, List[str]]:
        raise NotImplementedError(
            "RuleRepository.get_categories() must be implemented by a subclass"
        )

    def get_setting(self, key: str) -> Any:
        raise NotImplementedError(
            "RuleRepository.get_setting() must be implemented by a subclass"
        )

    def save(self, snapshot: RuleSnapshot) -> None:
        return None


class FileRuleRepository(RuleRepository):
    """YAML/JSON document-backed rule repository.

    Inputs (constructor):
      - path: File path. A ".json" suffix selects JSON; anything else is YAML.

    Outputs:
      - FileRuleRepository instance.

    Document layout:
      blocked: [ads.com, "*.tracker.io"]
      allowed: [school.edu]
      categories: {social: [facebook.com]}
      active_categories: [social]
      mode: blacklist

    A missing file reads as an empty document. Unreadable or unparsable files
    raise PersistenceError.
    """

    def __init__(self, path: str) -> None:
        self.path = os.path.abspath(os.path.expanduser(str(path)))
        self._lock = threading.Lock()

    @property
    def _is_json(self) -> bool:
        return self.path.lower().endswith(".json")

    def _read(self) -> Dict[str, Any]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                if self._is_json:
                    doc = json.load(f)
                else:
                    doc = yaml.safe_load(f)
        except (OSError, ValueError, yaml.YAMLError) as exc:
            raise PersistenceError(f"cannot read rules from {self.path}: {exc}") from exc
        if doc is None:
            return {}
        if not isinstance(doc, dict):
            raise PersistenceError(f"rules document {self.path} must be a mapping")
        return doc

    def get_blocked_domains(self) -> List[str]:
        return [str(d) for d in (self._read().get("blocked") or [])]

    def get_allowed_domains(self) -> List[str]:
        return [str(d) for d in (self._read().get("allowed") or [])]

    def get_categories(self) -> Dict[str, List[str]]:
        raw = self._read().get("categories")
        if raw is None:
            return {k: list(v) for k, v in DEFAULT_CATEGORIES.items()}
        if not isinstance(raw, dict):
            raise PersistenceError("rules.categories must be a mapping")
        return {str(k): [str(d) for d in (v or [])] for k, v in raw.items()}

    def get_setting(self, key: str) -> Any:
        return self._read().get(key)

    def save(self, snapshot: RuleSnapshot) -> None:
        """Brief: Atomically write snapshot.to_dict() to the repository file."""

        doc = snapshot.to_dict()
        directory = os.path.dirname(self.path) or "."
        with self._lock:
            try:
                os.makedirs(directory, exist_ok=True)
                fd, tmp = tempfile.mkstemp(prefix=".rules-", dir=directory)
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    if self._is_json:
                        json.dump(doc, f, indent=2)
                    else:
                        yaml.safe_dump(doc, f, sort_keys=False)
                os.replace(tmp, self.path)
            except OSError as exc:
                raise PersistenceError(f"cannot write rules to {self.path}: {exc}") from exc


def load_snapshot(repository: RuleRepository) -> RuleSnapshot:
    """Brief: Build a RuleSnapshot from a repository.

    Inputs:
      - repository: RuleRepository to read.

    Outputs:
      - RuleSnapshot (version 0; RuleStore stamps the real version).

    Raises:
      - PersistenceError: when the repository cannot be read or holds
        invalid rules.
    """

    try:
        mode = repository.get_setting("mode") or MODE_BLACKLIST
        active = repository.get_setting("active_categories") or []
        return RuleSnapshot.build(
            blocked=repository.get_blocked_domains(),
            allowed=repository.get_allowed_domains(),
            categories=repository.get_categories(),
            active_categories=active,
            mode=mode,
        )
    except ValidationError as exc:
        raise PersistenceError(f"repository holds invalid rules: {exc}") from exc


class RuleSync(threading.Thread):
    """
    Background daemon thread that re-reads the repository periodically.

    Inputs (constructor):
        store: RuleStore to update
        repository: RuleRepository to poll
        interval_seconds: Seconds between polls (default 60)

    Outputs:
        RuleSync thread instance (call start() to begin)

    A poll only publishes a new snapshot when the repository content differs
    from what was last read (or written) there, so an idle repository never
    flushes caches and never reverts an unsaved administrative change. Read
    failures are logged and the last known snapshot keeps serving.
    """

    def __init__(
        self,
        store: RuleStore,
        repository: RuleRepository,
        interval_seconds: float = 60.0,
        baseline: Optional[RuleSnapshot] = None,
    ) -> None:
        super().__init__(daemon=True, name="RuleSync")
        self.store = store
        self.repository = repository
        self.interval_seconds = max(1.0, float(interval_seconds))
        self._baseline = baseline
        self._stop_event = threading.Event()

    def mark_synced(self, snapshot: RuleSnapshot) -> None:
        """Brief: Record snapshot as the repository's current content."""

        self._baseline = snapshot

    def sync_once(self) -> Optional[RuleSnapshot]:
        """Brief: Perform one poll.

        Outputs:
          - The newly published snapshot, or None when nothing changed or the
            repository was unavailable.
        """

        try:
            fresh = load_snapshot(self.repository)
        except PersistenceError as exc:
            logger.warning("Rule sync skipped; repository unavailable: %s", exc)
            return None
        if self._baseline is not None and fresh.same_rules(self._baseline):
            return None
        self._baseline = fresh
        if fresh.same_rules(self.store.snapshot()):
            return None
        logger.info("Rule repository changed; replacing rule snapshot")
        return self.store.replace(fresh)

    def run(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.sync_once()
            except Exception as e:  # pragma: no cover
                logger.error("RuleSync error: %s", e, exc_info=True)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self.is_alive():
            self.join(timeout=timeout)
