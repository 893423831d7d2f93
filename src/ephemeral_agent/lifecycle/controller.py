"""Owns the lifecycle state machine for every ephemeral agent run.

Each instance is driven by one asyncio task. Every transition is written to
the ledger before the external action for that transition starts, so a
restart can always work out what might exist at the provider:

- PENDING instances never touched the provider and are simply closed.
- PROVISIONING and later instances are torn down, re-acquiring credentials
  and locating the resource by correlation tag when no handle was bound.

Every exit path past PENDING goes through TEARING_DOWN. An unconfirmed
teardown is written as an escalation record and the instance ends FAILED with
`orphan_risk` set.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Iterator
from contextlib import contextmanager
import random
from typing import Any

from ephemeral_agent.config.defaults import (
    MANAGED_BY_VALUE,
    TAG_KEY_LIFECYCLE_ID,
    TAG_KEY_MANAGED_BY,
)
from ephemeral_agent.enums import (
    CANCELLABLE_STATES,
    TEARDOWN_OWED_STATES,
    LifecycleState,
    TerminationReason,
)
from ephemeral_agent.errors import (
    AuthDenied,
    EphemeralAgentError,
    HandleAlreadyBound,
    ProvisionError,
    TeardownUnconfirmed,
    failure_profile_for,
)
from ephemeral_agent.lifecycle.credentials import CredentialBroker
from ephemeral_agent.lifecycle.ledger import Ledger, terminal_state_for
from ephemeral_agent.lifecycle.policy import ControllerPolicy, LifecyclePolicy
from ephemeral_agent.lifecycle.provisioner import ResourceProvisioner
from ephemeral_agent.lifecycle.readiness import ReadinessWatcher, TimedOut
from ephemeral_agent.lifecycle.reaper import Reaper
from ephemeral_agent.lifecycle.state_machine import LifecycleStateMachine
from ephemeral_agent.providers.interfaces import (
    CompletionSignal,
    ComputeProvider,
    IdentityProvider,
    WorkHandoff,
    WorkRegistry,
)
from ephemeral_agent.schema.models import (
    EscalationRecord,
    InstanceStatus,
    LifecycleInstance,
    ResourceHandle,
    ResourceSpec,
    ScopedCredential,
    StatusEvent,
    TransitionRecord,
)
from ephemeral_agent.utilities.clock import Clock, SystemClock
from ephemeral_agent.utilities.logger_manager import (
    LoggerManager,
    component_logger,
    record_metric,
)

SWEEP_SESSION_LABEL = "ephemeral-agent-sweep"


class _Interrupted(Exception):
    """Ends the active phase early and routes the instance to teardown."""

    def __init__(self, reason: TerminationReason, detail: str) -> None:
        super().__init__(detail)
        self.reason = reason
        self.detail = detail


def _reason_for(error: BaseException) -> TerminationReason:
    if isinstance(error, AuthDenied):
        return TerminationReason.AUTH_DENIED
    if isinstance(error, ProvisionError):
        return TerminationReason.PROVISION_ERROR
    return TerminationReason.INTERNAL_ERROR


def _describe(error: BaseException) -> str:
    if isinstance(error, ProvisionError):
        return error.code
    return f"{type(error).__name__}: {error}"


class LifecycleController:
    """Caller-facing API plus the per-instance drivers behind it."""

    def __init__(
        self,
        broker: CredentialBroker,
        provisioner: ResourceProvisioner,
        watcher: ReadinessWatcher,
        reaper: Reaper,
        handoff: WorkHandoff,
        ledger: Ledger,
        policy: ControllerPolicy | None = None,
        clock: Clock | None = None,
        logger_manager: LoggerManager | None = None,
    ) -> None:
        self.broker = broker
        self.provisioner = provisioner
        self.watcher = watcher
        self.reaper = reaper
        self.handoff = handoff
        self.ledger = ledger
        self.policy = policy or ControllerPolicy()
        self.clock = clock or SystemClock()
        self.logger_manager = logger_manager
        self.logger = component_logger(logger_manager, __name__)
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._cancel_events: dict[str, asyncio.Event] = {}
        self._done_events: dict[str, asyncio.Event] = {}
        self._started_at: dict[str, float] = {}
        self._handles: dict[str, str] = {}
        self._subscribers: list[tuple[str | None, asyncio.Queue[StatusEvent]]] = []
        self._closed = False

    @classmethod
    def build(
        cls,
        identity_provider: IdentityProvider,
        compute: ComputeProvider,
        registry: WorkRegistry,
        handoff: WorkHandoff,
        ledger: Ledger,
        policy: LifecyclePolicy | None = None,
        clock: Clock | None = None,
        logger_manager: LoggerManager | None = None,
        rng: random.Random | None = None,
    ) -> LifecycleController:
        """Wire the lifecycle components around one set of providers."""
        policy = policy or LifecyclePolicy()
        clock = clock or SystemClock()
        broker = CredentialBroker(
            identity_provider, policy.credentials, clock, logger_manager, rng
        )
        return cls(
            broker=broker,
            provisioner=ResourceProvisioner(
                compute, policy.provision, clock, logger_manager, rng
            ),
            watcher=ReadinessWatcher(
                registry, policy.readiness, clock, compute, logger_manager, rng
            ),
            reaper=Reaper(compute, policy.teardown, clock, broker, logger_manager, rng),
            handoff=handoff,
            ledger=ledger,
            policy=policy.controller,
            clock=clock,
            logger_manager=logger_manager,
        )

    # Caller API

    async def create_instance(
        self,
        resource_spec: ResourceSpec,
        target_account_ref: str,
        ready_deadline: float | None = None,
        job_deadline: float | None = None,
    ) -> str:
        """Persist a PENDING instance and start driving it. Returns its id."""
        if self._closed:
            raise RuntimeError("LifecycleController has been shut down")
        now = self.clock.now()
        instance = LifecycleInstance(
            target_account_ref=target_account_ref,
            resource_spec=resource_spec.model_copy(deep=True),
            created_at=now,
            ready_deadline_s=ready_deadline or self.policy.ready_deadline_s,
            job_deadline_s=job_deadline or self.policy.job_deadline_s,
            history=(
                TransitionRecord(from_state=None, to_state=LifecycleState.PENDING, at=now),
            ),
        )
        await self.ledger.put(instance)
        record_metric(self.logger_manager, "instances_created")
        self._publish(None, instance)
        self._started_at[instance.id] = self.clock.monotonic()
        self._spawn(instance, self._run(instance))
        return instance.id

    async def get_status(self, instance_id: str) -> InstanceStatus:
        return (await self.ledger.require(instance_id)).status()

    async def get_instance(self, instance_id: str) -> LifecycleInstance:
        return await self.ledger.require(instance_id)

    async def cancel(self, instance_id: str) -> InstanceStatus:
        """Request teardown. A no-op for instances already tearing down or closed."""
        instance = await self.ledger.require(instance_id)
        if instance.state not in CANCELLABLE_STATES:
            return instance.status()
        event = self._cancel_events.get(instance_id)
        if event is None:
            self.logger.warning(
                f"Cancel for {instance_id} ignored: not driven by this controller"
            )
        else:
            event.set()
        return instance.status()

    async def wait(self, instance_id: str) -> InstanceStatus:
        """Block until the instance reaches TERMINATED or FAILED."""
        done = self._done_events.get(instance_id)
        if done is not None:
            await done.wait()
            return await self.get_status(instance_id)
        while True:
            status = await self.get_status(instance_id)
            if status.state.is_terminal:
                return status
            await self.clock.sleep(self.policy.handoff_poll_interval_s)

    def subscribe(self, instance_id: str | None = None) -> asyncio.Queue[StatusEvent]:
        """Queue receiving a `StatusEvent` per durable transition."""
        queue: asyncio.Queue[StatusEvent] = asyncio.Queue()
        self._subscribers.append((instance_id, queue))
        return queue

    def unsubscribe(self, queue: asyncio.Queue[StatusEvent]) -> None:
        self._subscribers = [item for item in self._subscribers if item[1] is not queue]

    async def list_escalations(self) -> list[EscalationRecord]:
        return await self.ledger.list_escalations()

    async def shutdown(self, cancel_instances: bool = False) -> None:
        """Stop driving instances.

        With `cancel_instances` every run is cancelled and torn down before
        returning. Otherwise the drivers are stopped where they are and the
        ledger keeps their state for `recover()` on the next start.
        """
        self._closed = True
        tasks = [task for task in self._tasks.values() if not task.done()]
        if cancel_instances:
            for event in self._cancel_events.values():
                event.set()
        else:
            for task in tasks:
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.logger.info(f"Controller stopped ({len(tasks)} active drivers)")

    # Recovery

    async def recover(self) -> list[str]:
        """Resume teardown for every non-terminal instance left in the ledger."""
        instances = await self.ledger.list_all()
        for instance in instances:
            if instance.resource_handle is not None:
                self._handles[instance.resource_handle.resource_id] = instance.id
        recovered: list[str] = []
        for instance in instances:
            if instance.is_terminal or instance.id in self._tasks:
                continue
            recovered.append(instance.id)
            record_metric(self.logger_manager, "instances_recovered")
            if instance.state not in TEARDOWN_OWED_STATES:
                with self._context(instance.id):
                    await self._close(
                        instance,
                        TerminationReason.ORCHESTRATOR_RECOVERY,
                        "pending at restart; nothing was provisioned",
                    )
                continue
            if (
                instance.state == LifecycleState.TEARING_DOWN
                and instance.termination_reason is not None
            ):
                reason = instance.termination_reason
            else:
                reason = TerminationReason.ORCHESTRATOR_RECOVERY
            self._spawn(
                instance,
                self._teardown(instance, None, reason, f"recovered from {instance.state.value}"),
            )
        self.logger.info(f"Recovery resumed {len(recovered)} instances")
        return recovered

    async def sweep_orphans(self, target_account_ref: str) -> list[str]:
        """Reap tagged resources whose lifecycle id is unknown or already closed."""
        credential = await self.broker.acquire(target_account_ref, SWEEP_SESSION_LABEL)
        compute = self.reaper.compute
        resources = await compute.find_resources(
            credential, {TAG_KEY_MANAGED_BY: MANAGED_BY_VALUE}
        )
        known = {instance.id: instance for instance in await self.ledger.list_all()}
        reaped: list[str] = []
        for resource_id, tags in resources.items():
            correlation_id = tags.get(TAG_KEY_LIFECYCLE_ID, "")
            owner = known.get(correlation_id)
            if owner is not None and not owner.is_terminal:
                continue
            handle = ResourceHandle(
                resource_id=resource_id,
                provider=compute.name,
                correlation_id=correlation_id,
            )
            self.logger.warning(
                f"Orphaned resource {resource_id} (lifecycle id {correlation_id or 'none'})"
            )
            try:
                await self.reaper.terminate(credential, handle)
            except TeardownUnconfirmed as exc:
                await self._record_escalation(
                    correlation_id or f"orphan-{resource_id}",
                    resource_id,
                    target_account_ref,
                    exc,
                )
                continue
            reaped.append(resource_id)
        record_metric(self.logger_manager, "orphans_reaped", len(reaped))
        return reaped

    # Drivers

    def _spawn(self, instance: LifecycleInstance, body: Awaitable[Any]) -> None:
        self._cancel_events.setdefault(instance.id, asyncio.Event())
        self._done_events.setdefault(instance.id, asyncio.Event())
        self._tasks[instance.id] = asyncio.create_task(
            self._drive(instance.id, body), name=f"lifecycle-{instance.id}"
        )

    async def _drive(self, instance_id: str, body: Awaitable[Any]) -> None:
        with self._context(instance_id):
            try:
                await body
            except asyncio.CancelledError:
                self.logger.info(f"Driver for {instance_id} stopped; ledger keeps its state")
                raise
            except Exception:
                # Only reachable when the ledger itself cannot be written.
                self.logger.exception(f"Driver for {instance_id} aborted")
                record_metric(self.logger_manager, "driver_failures")
            finally:
                self._done_events.pop(instance_id).set()
                self._tasks.pop(instance_id, None)
                self._cancel_events.pop(instance_id, None)
                self._started_at.pop(instance_id, None)

    @contextmanager
    def _context(self, instance_id: str) -> Iterator[None]:
        if self.logger_manager is None:
            yield
            return
        with self.logger_manager.context(instance_id=instance_id):
            yield

    async def _run(self, instance: LifecycleInstance) -> None:
        cancel = self._cancel_events[instance.id]
        credential: ScopedCredential | None = None
        try:
            if cancel.is_set():
                raise _Interrupted(
                    TerminationReason.CALLER_CANCELLED, "cancelled before start"
                )
            credential = await self._race(
                self.broker.acquire(instance.target_account_ref, instance.agent_label),
                cancel,
            )
            instance = await self._transition(instance, LifecycleState.PROVISIONING)
            # Provisioning is never interrupted: a half-sent create could
            # leave a resource nobody knows the id of.
            handle = await self.provisioner.provision(
                credential, instance.resource_spec, instance.id
            )
            instance = await self._transition(
                self._bind(instance, handle), LifecycleState.AWAITING_READY
            )
            if cancel.is_set():
                raise _Interrupted(
                    TerminationReason.CALLER_CANCELLED, "cancelled while provisioning"
                )
            deadline = self._started_at[instance.id] + instance.ready_deadline_s
            outcome = await self._race(
                self.watcher.await_ready(handle, deadline, credential), cancel
            )
            if isinstance(outcome, TimedOut):
                raise _Interrupted(
                    TerminationReason.TIMEOUT,
                    f"not ready ({outcome.reason}) after {outcome.polls} polls",
                )
            instance = await self._transition(
                instance, LifecycleState.READY, ready_at=self.clock.now()
            )
            await self._race(self.handoff.hand_off(instance, handle), cancel)
            instance = await self._transition(instance, LifecycleState.IN_USE)
            signal: CompletionSignal = await self._race(
                self.handoff.wait_for_completion(instance),
                cancel,
                timeout_s=instance.job_deadline_s,
            )
            reason = TerminationReason.COMPLETED
            detail = signal.detail or ("job succeeded" if signal.succeeded else "job failed")
        except _Interrupted as exc:
            reason, detail = exc.reason, exc.detail
        except EphemeralAgentError as exc:
            reason, detail = _reason_for(exc), _describe(exc)
            log = (
                self.logger.critical
                if failure_profile_for(exc).operator_attention
                else self.logger.error
            )
            log(f"{instance.id} failed in {instance.state.value}: {detail}")
        except Exception as exc:
            reason, detail = TerminationReason.INTERNAL_ERROR, _describe(exc)
            self.logger.exception(f"{instance.id} hit an internal error in {instance.state.value}")

        if instance.state == LifecycleState.PENDING:
            if reason == TerminationReason.CALLER_CANCELLED:
                instance = await self._transition(
                    instance,
                    LifecycleState.TEARING_DOWN,
                    reason=reason,
                    detail=detail,
                    termination_reason=reason,
                )
            await self._close(instance, reason, detail)
            return
        await self._teardown(instance, credential, reason, detail)

    async def _race(
        self,
        operation: Awaitable[Any],
        cancel: asyncio.Event,
        timeout_s: float | None = None,
    ) -> Any:
        """Await `operation` unless cancellation or `timeout_s` comes first."""
        work = asyncio.ensure_future(operation)
        cancelled = asyncio.ensure_future(cancel.wait())
        waiters: set[asyncio.Future[Any]] = {work, cancelled}
        expired: asyncio.Future[Any] | None = None
        if timeout_s is not None:
            expired = asyncio.ensure_future(self.clock.sleep(timeout_s))
            waiters.add(expired)
        try:
            done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                if not waiter.done():
                    waiter.cancel()
        if work in done:
            return work.result()
        if expired is not None and expired in done:
            raise _Interrupted(
                TerminationReason.TIMEOUT, f"job deadline of {timeout_s:.0f}s exceeded"
            )
        raise _Interrupted(TerminationReason.CALLER_CANCELLED, "cancelled by caller")

    async def _teardown(
        self,
        instance: LifecycleInstance,
        credential: ScopedCredential | None,
        reason: TerminationReason,
        detail: str,
    ) -> LifecycleInstance:
        if instance.state != LifecycleState.TEARING_DOWN:
            instance = await self._transition(
                instance,
                LifecycleState.TEARING_DOWN,
                reason=reason,
                detail=detail,
                termination_reason=reason,
            )
        try:
            if credential is None:
                credential = await self.broker.acquire(
                    instance.target_account_ref, instance.agent_label
                )
            else:
                credential = await self.broker.ensure_valid(credential)
            confirmed = await self.reaper.terminate(
                credential, instance.resource_handle, correlation_id=instance.id
            )
        except EphemeralAgentError as exc:
            return await self._escalate(instance, reason, exc)
        except Exception as exc:
            self.logger.exception(f"Teardown of {instance.id} hit an internal error")
            return await self._escalate(instance, reason, exc)
        if confirmed.nothing_to_do:
            detail = f"{detail}; no resource found"
        return await self._close(instance, reason, detail)

    async def _escalate(
        self,
        instance: LifecycleInstance,
        reason: TerminationReason,
        error: Exception,
    ) -> LifecycleInstance:
        resource_id = (
            instance.resource_handle.resource_id
            if instance.resource_handle is not None
            else getattr(error, "resource_id", None)
        )
        await self._record_escalation(
            instance.id, resource_id, instance.target_account_ref, error
        )
        return await self._close(
            instance, reason, f"teardown unconfirmed: {error}", orphan_risk=True
        )

    async def _record_escalation(
        self,
        instance_id: str,
        resource_id: str | None,
        target_account_ref: str,
        error: Exception,
    ) -> None:
        record = EscalationRecord(
            instance_id=instance_id,
            resource_id=resource_id,
            target_account_ref=target_account_ref,
            attempts=getattr(error, "attempts", 0),
            last_error=getattr(error, "last_error", None) or _describe(error),
            recorded_at=self.clock.now(),
        )
        await self.ledger.record_escalation(record)
        record_metric(self.logger_manager, "escalations")
        self.logger.critical(
            f"Manual intervention needed for {resource_id or 'unknown resource'} "
            f"of {instance_id}: {record.last_error}"
        )

    # Persistence helpers

    def _bind(self, instance: LifecycleInstance, handle: ResourceHandle) -> LifecycleInstance:
        owner = self._handles.get(handle.resource_id)
        if owner is not None and owner != instance.id:
            raise HandleAlreadyBound(
                f"{handle.resource_id} is already bound to instance {owner}"
            )
        bound = instance.bind_handle(handle)
        self._handles[handle.resource_id] = instance.id
        return bound

    async def _transition(
        self,
        instance: LifecycleInstance,
        target: LifecycleState,
        *,
        reason: TerminationReason | None = None,
        detail: str | None = None,
        **updates: Any,
    ) -> LifecycleInstance:
        """Validate, persist and announce a non-terminal transition."""
        LifecycleStateMachine(instance.state).transition_to(target)
        record = TransitionRecord(
            from_state=instance.state,
            to_state=target,
            at=self.clock.now(),
            reason=reason,
            detail=detail,
        )
        updated = instance.model_copy(
            update={"state": target, "history": instance.history + (record,), **updates}
        )
        await self.ledger.put(updated)
        record_metric(self.logger_manager, "transitions", tags={"to": target.value})
        self.logger.info(f"{instance.id}: {instance.state.value} -> {target.value}")
        self._publish(instance.state, updated)
        return updated

    async def _close(
        self,
        instance: LifecycleInstance,
        reason: TerminationReason,
        detail: str | None = None,
        orphan_risk: bool = False,
    ) -> LifecycleInstance:
        LifecycleStateMachine(instance.state).transition_to(
            terminal_state_for(reason, orphan_risk)
        )
        closed = await self.ledger.mark_terminal(
            instance.id,
            reason,
            orphan_risk=orphan_risk,
            at=self.clock.now(),
            detail=detail,
        )
        record_metric(
            self.logger_manager,
            "instances_closed",
            tags={"state": closed.state.value, "reason": reason.value},
        )
        self.logger.info(
            f"{instance.id}: {instance.state.value} -> {closed.state.value} ({reason.value})"
        )
        self._publish(instance.state, closed)
        return closed

    def _publish(
        self, from_state: LifecycleState | None, instance: LifecycleInstance
    ) -> None:
        event = StatusEvent(
            instance_id=instance.id,
            from_state=from_state,
            to_state=instance.state,
            termination_reason=instance.termination_reason,
            orphan_risk=instance.orphan_risk,
            at=self.clock.now(),
        )
        for instance_filter, queue in self._subscribers:
            if instance_filter is None or instance_filter == instance.id:
                queue.put_nowait(event)
