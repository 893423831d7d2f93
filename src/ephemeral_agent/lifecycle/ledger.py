"""Durable record of lifecycle instances, used as the recovery source of truth.

The controller writes each transition here before it acts on it externally,
so after a crash the ledger always knows at least as much as the provider.

Storage backends:
- `InMemoryLedger` for tests and embedding.
- `FileLedger`: one JSON document per instance, replaced atomically.

Writes are serialized per instance id only. Distinct instances never contend
for a lock.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
import asyncio
from collections import defaultdict
from datetime import UTC, datetime
import json
import os
from pathlib import Path
import re
import tempfile

from pydantic import ValidationError

from ephemeral_agent.enums import LifecycleState, TerminationReason
from ephemeral_agent.errors import InvalidTransition, LedgerError, UnknownInstance
from ephemeral_agent.schema.models import (
    EscalationRecord,
    LifecycleInstance,
    TransitionRecord,
)

_SAFE_ID = re.compile(r"^[A-Za-z0-9_.-]{1,128}$")


def terminal_state_for(reason: TerminationReason, orphan_risk: bool = False) -> LifecycleState:
    if reason.is_success and not orphan_risk:
        return LifecycleState.TERMINATED
    return LifecycleState.FAILED


def check_forward(existing: LifecycleInstance | None, updated: LifecycleInstance) -> None:
    """Reject writes that would move an instance backwards or out of a terminal state."""
    if existing is None:
        return
    if existing.id != updated.id:
        raise LedgerError(f"Id mismatch: {existing.id} != {updated.id}")
    if existing.is_terminal and updated.state != existing.state:
        raise InvalidTransition(
            f"{existing.id} is {existing.state.value}; terminal states are absorbing"
        )
    if updated.state.rank < existing.state.rank:
        raise InvalidTransition(
            f"{existing.id}: {existing.state.value} -> {updated.state.value} moves backwards"
        )
    if existing.resource_spec != updated.resource_spec:
        raise InvalidTransition(f"{existing.id}: resource_spec is immutable")
    if (
        existing.resource_handle is not None
        and updated.resource_handle != existing.resource_handle
    ):
        raise InvalidTransition(f"{existing.id}: resource handle cannot be rebound")


class Ledger(ABC):
    """Async ledger contract: `put`, `get`, `list_non_terminal`, `mark_terminal`."""

    def __init__(self) -> None:
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def put(self, instance: LifecycleInstance) -> None:
        """Durably store `instance`, returning only once the write is complete."""
        async with self._locks[instance.id]:
            check_forward(await self._load(instance.id), instance)
            await self._store(instance)

    async def get(self, instance_id: str) -> LifecycleInstance | None:
        return await self._load(instance_id)

    async def require(self, instance_id: str) -> LifecycleInstance:
        instance = await self.get(instance_id)
        if instance is None:
            raise UnknownInstance(instance_id)
        return instance

    async def list_all(self) -> list[LifecycleInstance]:
        return sorted(await self._load_all(), key=lambda item: item.created_at)

    async def list_non_terminal(self) -> list[LifecycleInstance]:
        return [item for item in await self.list_all() if not item.is_terminal]

    async def mark_terminal(
        self,
        instance_id: str,
        reason: TerminationReason,
        *,
        orphan_risk: bool = False,
        at: datetime | None = None,
        detail: str | None = None,
    ) -> LifecycleInstance:
        """Close an instance as TERMINATED or FAILED depending on `reason`."""
        async with self._locks[instance_id]:
            existing = await self._load(instance_id)
            if existing is None:
                raise UnknownInstance(instance_id)
            state = terminal_state_for(reason, orphan_risk)
            if existing.is_terminal:
                if existing.state == state and existing.termination_reason == reason:
                    return existing
                raise InvalidTransition(
                    f"{instance_id} already closed as {existing.state.value}"
                )
            moment = at or datetime.now(UTC)
            updated = existing.model_copy(
                update={
                    "state": state,
                    "termination_reason": reason,
                    "terminated_at": moment,
                    "orphan_risk": existing.orphan_risk or orphan_risk,
                    "history": existing.history
                    + (
                        TransitionRecord(
                            from_state=existing.state,
                            to_state=state,
                            at=moment,
                            reason=reason,
                            detail=detail,
                        ),
                    ),
                }
            )
            await self._store(updated)
            return updated

    async def record_escalation(self, record: EscalationRecord) -> None:
        await self._store_escalation(record)

    async def list_escalations(self) -> list[EscalationRecord]:
        return sorted(await self._load_escalations(), key=lambda item: item.recorded_at)

    @abstractmethod
    async def _load(self, instance_id: str) -> LifecycleInstance | None: ...

    @abstractmethod
    async def _store(self, instance: LifecycleInstance) -> None: ...

    @abstractmethod
    async def _load_all(self) -> list[LifecycleInstance]: ...

    @abstractmethod
    async def _store_escalation(self, record: EscalationRecord) -> None: ...

    @abstractmethod
    async def _load_escalations(self) -> list[EscalationRecord]: ...


class InMemoryLedger(Ledger):
    """Process-local ledger. Contents are lost with the process."""

    def __init__(self) -> None:
        super().__init__()
        self._instances: dict[str, LifecycleInstance] = {}
        self._escalations: list[EscalationRecord] = []
        self.writes: list[LifecycleInstance] = []

    async def _load(self, instance_id: str) -> LifecycleInstance | None:
        return self._instances.get(instance_id)

    async def _store(self, instance: LifecycleInstance) -> None:
        self._instances[instance.id] = instance
        self.writes.append(instance)

    async def _load_all(self) -> list[LifecycleInstance]:
        return list(self._instances.values())

    async def _store_escalation(self, record: EscalationRecord) -> None:
        self._escalations.append(record)

    async def _load_escalations(self) -> list[EscalationRecord]:
        return list(self._escalations)


class FileLedger(Ledger):
    """One JSON file per instance under `root/instances`, escalations under `root/escalations`.

    Each write goes to a temporary file in the same directory, is fsynced and
    then renamed over the previous version, so a crash leaves either the old
    or the new record and never a torn one.
    """

    def __init__(self, root: Path | str) -> None:
        super().__init__()
        self.root = Path(root)
        self.instances_dir = self.root / "instances"
        self.escalations_dir = self.root / "escalations"
        self.instances_dir.mkdir(parents=True, exist_ok=True)
        self.escalations_dir.mkdir(parents=True, exist_ok=True)

    def _path_for(self, instance_id: str) -> Path:
        if not _SAFE_ID.match(instance_id):
            raise LedgerError(f"Unsafe instance id for file ledger: {instance_id!r}")
        return self.instances_dir / f"{instance_id}.json"

    @staticmethod
    def _write_atomic(path: Path, payload: str) -> None:
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{path.stem}-", suffix=".tmp", dir=path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except OSError as exc:
            Path(tmp_name).unlink(missing_ok=True)
            raise LedgerError(f"Failed to write {path}: {exc}") from exc
        try:
            dir_fd = os.open(path.parent, os.O_RDONLY)
        except OSError:
            return
        try:
            os.fsync(dir_fd)
        except OSError:
            pass
        finally:
            os.close(dir_fd)

    @staticmethod
    def _read_instance(path: Path) -> LifecycleInstance | None:
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise LedgerError(f"Failed to read {path}: {exc}") from exc
        try:
            return LifecycleInstance.model_validate_json(raw)
        except ValidationError as exc:
            raise LedgerError(f"Corrupt ledger entry {path}: {exc}") from exc

    async def _load(self, instance_id: str) -> LifecycleInstance | None:
        if not _SAFE_ID.match(instance_id):
            # Never written under this id, since `_store` rejects it.
            return None
        return await asyncio.to_thread(self._read_instance, self._path_for(instance_id))

    async def _store(self, instance: LifecycleInstance) -> None:
        payload = instance.model_dump_json(indent=2)
        await asyncio.to_thread(self._write_atomic, self._path_for(instance.id), payload)

    def _read_all(self) -> list[LifecycleInstance]:
        instances = []
        for path in sorted(self.instances_dir.glob("*.json")):
            instance = self._read_instance(path)
            if instance is not None:
                instances.append(instance)
        return instances

    async def _load_all(self) -> list[LifecycleInstance]:
        return await asyncio.to_thread(self._read_all)

    async def _store_escalation(self, record: EscalationRecord) -> None:
        if not _SAFE_ID.match(record.instance_id):
            raise LedgerError(f"Unsafe instance id for file ledger: {record.instance_id!r}")
        stamp = record.recorded_at.strftime("%Y%m%dT%H%M%S%f")
        path = self.escalations_dir / f"{record.instance_id}-{stamp}.json"
        await asyncio.to_thread(self._write_atomic, path, record.model_dump_json(indent=2))

    def _read_escalations(self) -> list[EscalationRecord]:
        records = []
        for path in sorted(self.escalations_dir.glob("*.json")):
            try:
                records.append(
                    EscalationRecord.model_validate(
                        json.loads(path.read_text(encoding="utf-8"))
                    )
                )
            except (OSError, ValueError) as exc:
                raise LedgerError(f"Unreadable escalation record {path}: {exc}") from exc
        return records

    async def _load_escalations(self) -> list[EscalationRecord]:
        return await asyncio.to_thread(self._read_escalations)
