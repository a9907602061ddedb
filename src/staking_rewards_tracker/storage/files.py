"""JSON file store implementations rooted at a data directory."""

import json
import os
import re
import tempfile
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from staking_rewards_tracker.core.errors import InvalidInputError, NotFoundError, StoreWriteError
from staking_rewards_tracker.core.models import HoldingStatus, PaymentStatus, RewardEvent, SyncCursors
from staking_rewards_tracker.storage.memory import sort_newest_first

_SAFE_ID = re.compile(r"^[A-Za-z0-9_.-]+$")


def write_json_atomic(path: Path, data: Any) -> None:
    """
    Write JSON to ``path`` via a temporary file and rename.

    Raises
    ------
    StoreWriteError
        If the file cannot be written

    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, sort_keys=True)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
    except OSError as e:
        msg = f"Failed to write {path}: {e}"
        raise StoreWriteError(msg) from e


def read_json(path: Path, default: Any) -> Any:
    """Read JSON from ``path``, returning ``default`` when the file is absent."""
    if not path.exists():
        return default
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def delete_file(path: Path) -> None:
    """Remove ``path`` if present, raising StoreWriteError on failure."""
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        msg = f"Failed to delete {path}: {e}"
        raise StoreWriteError(msg) from e


class _TrackerFiles:
    """Maps tracker ids to one JSON file each under ``root``."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def path_for(self, tracker_id: str) -> Path:
        if not _SAFE_ID.match(tracker_id):
            msg = f"Tracker id {tracker_id!r} cannot be used as a file name"
            raise InvalidInputError(msg)
        return self.root / f"{tracker_id}.json"


def _parse_events(raw: list[dict[str, Any]], path: Path) -> list[RewardEvent]:
    try:
        return [RewardEvent.model_validate(item) for item in raw]
    except ValidationError as e:
        msg = f"Corrupt event data in {path}: {e}"
        raise InvalidInputError(msg) from e


class JsonLocalCache(_TrackerFiles):
    """
    Local cache storing one ``{"events": [...], "cursors": {...}}`` file per tracker.

    Parameters
    ----------
    root : Path
        Directory holding the tracker files

    """

    def _read(self, tracker_id: str) -> tuple[Path, dict[str, Any]]:
        path = self.path_for(tracker_id)
        return path, read_json(path, {"events": [], "cursors": None})

    def get_all(self, tracker_id: str) -> list[RewardEvent]:
        path, data = self._read(tracker_id)
        return sort_newest_first(_parse_events(data.get("events", []), path))

    def replace_all(self, tracker_id: str, events: list[RewardEvent]) -> None:
        path, data = self._read(tracker_id)
        data["events"] = [event.model_dump(mode="json") for event in sort_newest_first(events)]
        write_json_atomic(path, data)

    def get_one(self, tracker_id: str, event_hash: str) -> RewardEvent | None:
        for event in self.get_all(tracker_id):
            if event.hash == event_hash:
                return event
        return None

    def put_one(self, tracker_id: str, event: RewardEvent) -> None:
        events = {e.hash: e for e in self.get_all(tracker_id)}
        events[event.hash] = event
        self.replace_all(tracker_id, list(events.values()))

    def delete_all(self, tracker_id: str) -> None:
        delete_file(self.path_for(tracker_id))

    def get_cursors(self, tracker_id: str) -> SyncCursors | None:
        _, data = self._read(tracker_id)
        raw = data.get("cursors")
        return SyncCursors.model_validate(raw) if raw else None

    def save_cursors(self, tracker_id: str, cursors: SyncCursors) -> None:
        path, data = self._read(tracker_id)
        data["cursors"] = cursors.model_dump(mode="json")
        write_json_atomic(path, data)


class JsonRemoteStore(_TrackerFiles):
    """
    Durable store keeping one ``{hash: document}`` file per tracker.

    Like every remote store, upserts insert missing documents only; settlement
    changes go through ``update_status``.
    """

    def _documents(self, tracker_id: str) -> tuple[Path, dict[str, RewardEvent]]:
        path = self.path_for(tracker_id)
        raw = read_json(path, {})
        events = _parse_events(list(raw.values()), path)
        return path, {event.hash: event for event in events}

    def _write(self, path: Path, docs: dict[str, RewardEvent]) -> None:
        write_json_atomic(path, {h: doc.model_dump(mode="json") for h, doc in docs.items()})

    def get_delta(self, tracker_id: str, since: int | None = None) -> list[RewardEvent]:
        _, docs = self._documents(tracker_id)
        events = list(docs.values())
        if since is not None:
            events = [event for event in events if event.timestamp_sec > since]
        return sort_newest_first(events)

    def upsert_batch(self, tracker_id: str, events: list[RewardEvent]) -> None:
        path, docs = self._documents(tracker_id)
        for event in events:
            if event.hash not in docs:
                docs[event.hash] = event.model_copy(update={"holding_override": None})
        self._write(path, docs)

    def update_status(
        self,
        tracker_id: str,
        event_hash: str,
        status: PaymentStatus,
        settlement_ref: str | None,
    ) -> None:
        path, docs = self._documents(tracker_id)
        doc = docs.get(event_hash)
        if doc is None:
            msg = f"No remote document {event_hash} for tracker {tracker_id}"
            raise NotFoundError(msg)
        docs[event_hash] = doc.model_copy(update={"status": status, "settlement_ref": settlement_ref})
        self._write(path, docs)

    def delete_all(self, tracker_id: str) -> None:
        delete_file(self.path_for(tracker_id))


class JsonOverrideStore(_TrackerFiles):
    """Holding overrides stored as one ``{hash: status}`` file per tracker."""

    def get_all(self, tracker_id: str) -> dict[str, HoldingStatus]:
        raw = read_json(self.path_for(tracker_id), {})
        return {event_hash: HoldingStatus(status) for event_hash, status in raw.items()}

    def set(self, tracker_id: str, event_hash: str, status: HoldingStatus) -> None:
        overrides = self.get_all(tracker_id)
        overrides[event_hash] = status
        write_json_atomic(self.path_for(tracker_id), {h: str(s) for h, s in overrides.items()})

    def delete_all(self, tracker_id: str) -> None:
        delete_file(self.path_for(tracker_id))


def open_file_stores(data_dir: Path) -> tuple[JsonLocalCache, JsonRemoteStore, JsonOverrideStore]:
    """Return the three JSON stores rooted under ``data_dir``."""
    data_dir = Path(data_dir)
    return (
        JsonLocalCache(data_dir / "local"),
        JsonRemoteStore(data_dir / "remote"),
        JsonOverrideStore(data_dir / "overrides"),
    )
