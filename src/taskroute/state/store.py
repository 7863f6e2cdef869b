from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from taskroute.config import DEFAULT_WORKSPACE
from taskroute.models import Phase, Task, TaskStatus, utcnow_iso
from taskroute.roles import RoleRegistry, default_registry
from taskroute.state.plan import (
    DEFAULT_MAX_RETRIES,
    PlanStrategy,
    PlanSummary,
    RetryState,
    RoutingPlan,
)

logger = logging.getLogger(__name__)

WORKSPACE_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class PlanStateError(RuntimeError):
    """Raised when plan-state operations fail."""


@dataclass(slots=True)
class PlanCreation:
    plan: RoutingPlan
    persisted: bool
    error: str | None = None


class PlanStateStore:
    SCHEMA_VERSION = 1

    def __init__(
        self,
        state_dir: Path,
        *,
        registry: RoleRegistry | None = None,
        lock_timeout_seconds: float = 3.0,
    ) -> None:
        self.state_dir = Path(state_dir)
        self.archive_dir = self.state_dir / "archive"
        self.registry = registry or default_registry()
        self.lock_timeout_seconds = lock_timeout_seconds
        self._thread_lock = threading.RLock()
        self._lock_depth: dict[str, int] = {}

    @staticmethod
    def _validate_workspace(workspace: str) -> None:
        if not WORKSPACE_PATTERN.match(workspace or ""):
            raise PlanStateError(f"Invalid workspace name: {workspace!r}")

    def document_path(self, workspace: str = DEFAULT_WORKSPACE) -> Path:
        self._validate_workspace(workspace)
        return self.state_dir / f"{workspace}.json"

    def _lock_path(self, workspace: str) -> Path:
        return self.state_dir / f"{workspace}.lock"

    @contextmanager
    def _file_lock(self, workspace: str):
        lock_file = self._lock_path(workspace)
        start = time.monotonic()
        while True:
            try:
                fd = os.open(lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > self.lock_timeout_seconds:
                    raise PlanStateError(
                        f"Timed out waiting for state lock of workspace '{workspace}'."
                    ) from exc
                time.sleep(0.02)
            except OSError as exc:
                raise PlanStateError(f"Cannot create state lock {lock_file}: {exc}") from exc

        try:
            yield
        finally:
            try:
                lock_file.unlink()
            except FileNotFoundError:
                pass

    @contextmanager
    def _locked(self, workspace: str):
        self._validate_workspace(workspace)
        with self._thread_lock:
            depth = self._lock_depth.get(workspace, 0)
            if depth == 0:
                try:
                    self.state_dir.mkdir(parents=True, exist_ok=True)
                except OSError as exc:
                    raise PlanStateError(f"Cannot create state directory: {exc}") from exc
            self._lock_depth[workspace] = depth + 1
            try:
                if depth == 0:
                    with self._file_lock(workspace):
                        yield
                else:
                    yield
            finally:
                self._lock_depth[workspace] -= 1
                if self._lock_depth[workspace] == 0:
                    del self._lock_depth[workspace]

    def _read_raw_json(self, path: Path) -> Any:
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Ignoring undecodable state document %s", path)
            return None
        except OSError as exc:
            raise PlanStateError(f"Cannot read state document {path}: {exc}") from exc

    def _write_raw_json(self, path: Path, payload: Any) -> None:
        serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{path.stem}-", dir=path.parent)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(serialized)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            logger.error("Failed to write state document %s: %s", path, exc)
            raise PlanStateError(f"Cannot write state document {path}: {exc}") from exc

    def _normalize_envelope(self, raw_payload: Any) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 1),
                "updated_at": raw_payload.get("updated_at") or utcnow_iso(),
                "data": raw_payload.get("data"),
            }
        legacy = raw_payload if isinstance(raw_payload, dict) and "plan_id" in raw_payload else None
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 0,
            "updated_at": utcnow_iso(),
            "data": legacy,
        }

    def get_envelope(self, workspace: str = DEFAULT_WORKSPACE) -> dict[str, Any]:
        return self._normalize_envelope(self._read_raw_json(self.document_path(workspace)))

    def _plan_from_envelope(self, envelope: dict[str, Any], workspace: str) -> RoutingPlan | None:
        data = envelope.get("data")
        if not data:
            return None
        try:
            return RoutingPlan.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            raise PlanStateError(
                f"Corrupt plan document for workspace '{workspace}': {exc}"
            ) from exc

    def _write_envelope(
        self,
        workspace: str,
        data: dict[str, Any] | None,
        expected_revision: int,
    ) -> None:
        path = self.document_path(workspace)
        current = self._normalize_envelope(self._read_raw_json(path))
        current_revision = int(current["revision"])
        if expected_revision != current_revision:
            raise PlanStateError(f"Concurrent state update detected for workspace '{workspace}'.")
        self._write_raw_json(
            path,
            {
                "schema_version": self.SCHEMA_VERSION,
                "revision": current_revision + 1,
                "updated_at": utcnow_iso(),
                "data": data,
            },
        )

    def _archive(self, workspace: str, plan: RoutingPlan) -> None:
        self._write_raw_json(
            self.archive_dir / f"{plan.plan_id}.json",
            {
                "schema_version": self.SCHEMA_VERSION,
                "workspace": workspace,
                "archived_at": utcnow_iso(),
                "archived_ns": time.time_ns(),
                "data": plan.to_dict(),
            },
        )
        logger.info("Archived plan %s (%s)", plan.plan_id, plan.status.value)

    def _save(self, workspace: str, plan: RoutingPlan, expected_revision: int) -> None:
        plan.updated_at = utcnow_iso()
        if plan.is_active:
            self._write_envelope(workspace, plan.to_dict(), expected_revision)
            return
        self._archive(workspace, plan)
        self._write_envelope(workspace, None, expected_revision)

    @contextmanager
    def transaction(self, workspace: str = DEFAULT_WORKSPACE) -> Iterator[RoutingPlan | None]:
        """Yield the active plan under the workspace lock and persist any change.

        Nothing is written when the body raises or leaves the plan untouched. A
        plan that reaches a terminal status is archived and the active slot is
        cleared.
        """
        with self._locked(workspace):
            envelope = self.get_envelope(workspace)
            plan = self._plan_from_envelope(envelope, workspace)
            before = plan.to_dict() if plan is not None else None
            yield plan
            if plan is not None and plan.to_dict() != before:
                self._save(workspace, plan, int(envelope["revision"]))

    def load(self, workspace: str = DEFAULT_WORKSPACE) -> RoutingPlan | None:
        return self._plan_from_envelope(self.get_envelope(workspace), workspace)

    def has_active_plan(self, workspace: str = DEFAULT_WORKSPACE) -> bool:
        plan = self.load(workspace)
        return plan is not None and plan.is_active

    def create_plan(
        self,
        phases: list[Phase],
        original_request: str = "",
        *,
        workspace: str = DEFAULT_WORKSPACE,
        strategy: PlanStrategy | str = PlanStrategy.SEQUENTIAL,
        max_retries: int = DEFAULT_MAX_RETRIES,
        pattern: str | None = None,
    ) -> PlanCreation:
        plan = RoutingPlan.build(
            phases,
            original_request,
            strategy=strategy,
            max_retries=max_retries,
            pattern=pattern,
        )
        try:
            with self._locked(workspace):
                envelope = self.get_envelope(workspace)
                revision = int(envelope["revision"])
                previous = self._plan_from_envelope(envelope, workspace)
                if previous is not None and previous.cancel():
                    logger.info("Replacing active plan %s with %s", previous.plan_id, plan.plan_id)
                    previous.updated_at = utcnow_iso()
                    self._archive(workspace, previous)
                self._write_envelope(workspace, plan.to_dict(), revision)
        except PlanStateError as exc:
            logger.error("Plan %s was not persisted: %s", plan.plan_id, exc)
            return PlanCreation(plan=plan, persisted=False, error=str(exc))
        logger.info(
            "Created plan %s with %d task(s) in %d phase(s)",
            plan.plan_id,
            plan.total_count,
            len(plan.phases),
        )
        return PlanCreation(plan=plan, persisted=True)

    def mark_task_started(
        self, task_id: str, *, workspace: str = DEFAULT_WORKSPACE
    ) -> RoutingPlan | None:
        with self.transaction(workspace) as plan:
            if plan is not None:
                plan.mark_task_started(task_id)
            return plan

    def mark_task_completed(
        self, task_id: str, *, workspace: str = DEFAULT_WORKSPACE
    ) -> RoutingPlan | None:
        with self.transaction(workspace) as plan:
            if plan is not None:
                plan.mark_task_completed(task_id)
            return plan

    def mark_task_failed(
        self,
        task_id: str,
        error: str = "",
        *,
        workspace: str = DEFAULT_WORKSPACE,
    ) -> RoutingPlan | None:
        with self.transaction(workspace) as plan:
            if plan is not None:
                plan.mark_task_failed(task_id, error)
            return plan

    def mark_plan_completed(self, workspace: str = DEFAULT_WORKSPACE) -> RoutingPlan | None:
        with self.transaction(workspace) as plan:
            if plan is not None:
                plan.mark_completed()
            return plan

    def mark_plan_failed(
        self, reason: str = "", workspace: str = DEFAULT_WORKSPACE
    ) -> RoutingPlan | None:
        with self.transaction(workspace) as plan:
            if plan is not None:
                plan.mark_failed(reason)
            return plan

    def cancel(self, workspace: str = DEFAULT_WORKSPACE) -> RoutingPlan | None:
        with self.transaction(workspace) as plan:
            if plan is not None:
                plan.cancel()
            return plan

    def increment_retry(self, workspace: str = DEFAULT_WORKSPACE) -> RetryState:
        with self.transaction(workspace) as plan:
            if plan is None:
                return RetryState(
                    can_retry=False, current_retry=0, max_retries=DEFAULT_MAX_RETRIES
                )
            return plan.increment_retry()

    def clear(self, workspace: str = DEFAULT_WORKSPACE) -> None:
        with self._locked(workspace):
            envelope = self.get_envelope(workspace)
            if envelope["data"] is None:
                return
            self._write_envelope(workspace, None, int(envelope["revision"]))
        logger.info("Cleared active plan for workspace %s", workspace)

    def get_pending_tasks(self, workspace: str = DEFAULT_WORKSPACE) -> list[Task]:
        plan = self.load(workspace)
        return plan.pending_tasks() if plan is not None else []

    def get_executable_tasks(self, workspace: str = DEFAULT_WORKSPACE) -> list[Task]:
        plan = self.load(workspace)
        if plan is None:
            return []
        return plan.executable_tasks(self.registry.limit_for)

    def get_summary(self, workspace: str = DEFAULT_WORKSPACE) -> PlanSummary:
        plan = self.load(workspace)
        return plan.summary() if plan is not None else PlanSummary.empty()

    def find_tasks_by_role(
        self,
        role: str,
        *,
        workspace: str = DEFAULT_WORKSPACE,
        statuses: frozenset[TaskStatus] | None = None,
    ) -> list[Task]:
        plan = self.load(workspace)
        if plan is None:
            return []
        tasks = plan.tasks_for_role(role)
        if statuses is not None:
            tasks = [task for task in tasks if task.status in statuses]
        return tasks

    def last_archived(self, workspace: str = DEFAULT_WORKSPACE) -> RoutingPlan | None:
        self._validate_workspace(workspace)
        if not self.archive_dir.exists():
            return None
        latest: tuple[int, RoutingPlan] | None = None
        for path in self.archive_dir.glob("*.json"):
            payload = self._read_raw_json(path)
            if not isinstance(payload, dict) or payload.get("workspace") != workspace:
                continue
            try:
                plan = RoutingPlan.from_dict(payload["data"])
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping unreadable archived plan %s", path)
                continue
            stamp = int(payload.get("archived_ns") or 0)
            if latest is None or stamp > latest[0]:
                latest = (stamp, plan)
        return latest[1] if latest is not None else None

