from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
from typing import Any, AsyncIterator, Callable, Dict, Mapping, Optional

from .adapter import AdapterEvent, MessageReceived, PairingCodeReady, StatusChanged
from .errors import InvalidArgument, NotFound
from .metrics import (
    EVENTS_IGNORED,
    INSTANCES_CONNECTED,
    INSTANCES_DISCONNECTED,
    INSTANCES_INITIALIZING,
    INSTANCES_QR_PENDING,
)
from .state import (
    CLOSED,
    CONNECTED,
    DISCONNECTED,
    INITIALIZING,
    QR_PENDING,
    InstanceState,
    InstanceSummary,
    event_name,
    next_status,
)


LOGGER = logging.getLogger("waworker.registry")

EventListener = Callable[[InstanceState, Dict[str, Any]], None]

_PATCH_FIELDS = frozenset({"pairing_code", "connection_info", "last_error"})


class InstanceRegistry:
    """Owns the id -> runtime state mapping and the per-instance event pumps.

    Every instance gets its own event channel and lock. One pump task per
    instance drains the channel in order and applies each event under the
    instance lock; outbound sends take the same lock through
    :meth:`exclusive`, so one instance's transitions and sends never
    interleave while different instances never wait on each other.
    """

    def __init__(self, *, listener: Optional[EventListener] = None) -> None:
        self._states: Dict[str, InstanceState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._pumps: Dict[str, asyncio.Task[Any]] = {}
        self._lock = asyncio.Lock()
        self._listener = listener

    def set_listener(self, listener: Optional[EventListener]) -> None:
        self._listener = listener

    @staticmethod
    def new_channel() -> "asyncio.Queue[AdapterEvent]":
        return asyncio.Queue()

    def __contains__(self, instance_id: object) -> bool:
        return instance_id in self._states

    def __len__(self) -> int:
        return len(self._states)

    async def register(
        self, state: InstanceState, channel: "asyncio.Queue[AdapterEvent]"
    ) -> None:
        async with self._lock:
            if state.id in self._states:
                raise InvalidArgument("instance_already_active")
            self._states[state.id] = state
            self._locks[state.id] = asyncio.Lock()
            self._pumps[state.id] = asyncio.get_running_loop().create_task(
                self._pump(state.id, channel), name=f"instance-events-{state.id}"
            )
            self._update_metrics()
        LOGGER.info("stage=registered instance=%s status=%s", state.id, state.status)

    async def unregister(
        self, instance_id: str, *, final_status: str = CLOSED
    ) -> Optional[InstanceState]:
        async with self._lock:
            state = self._states.pop(instance_id, None)
            self._locks.pop(instance_id, None)
            pump = self._pumps.pop(instance_id, None)
            if state is not None:
                self._set_status(state, final_status, reason="unregister")
                state.pairing_code = None
            self._update_metrics()

        if pump is not None and pump is not asyncio.current_task():
            pump.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await pump
        return state

    async def unregister_all(self, *, final_status: str = CLOSED) -> list[InstanceState]:
        removed: list[InstanceState] = []
        for instance_id in list(self._states):
            state = await self.unregister(instance_id, final_status=final_status)
            if state is not None:
                removed.append(state)
        return removed

    def get(self, instance_id: str) -> Optional[InstanceState]:
        state = self._states.get(instance_id)
        if state is None:
            return None
        return dataclasses.replace(state)

    def list(self) -> list[InstanceSummary]:
        return [state.summary() for state in self._states.values()]

    async def update_status(
        self,
        instance_id: str,
        status: str,
        patch: Optional[Mapping[str, Any]] = None,
    ) -> Optional[InstanceState]:
        lock = self._locks.get(instance_id)
        if lock is None:
            return None
        async with lock:
            return self._update_locked(instance_id, status, patch or {})

    @contextlib.asynccontextmanager
    async def exclusive(self, instance_id: str) -> AsyncIterator[InstanceState]:
        """Hold the instance lock and yield its live state."""
        lock = self._locks.get(instance_id)
        if lock is None:
            raise NotFound(f"instance {instance_id} not found")
        async with lock:
            state = self._states.get(instance_id)
            if state is None or state.status == CLOSED:
                raise NotFound(f"instance {instance_id} not found")
            yield state

    def stats_snapshot(self) -> Dict[str, int]:
        counts = {INITIALIZING: 0, QR_PENDING: 0, CONNECTED: 0, DISCONNECTED: 0}
        for state in self._states.values():
            if state.status in counts:
                counts[state.status] += 1
        return counts

    def _update_locked(
        self, instance_id: str, status: str, patch: Mapping[str, Any]
    ) -> Optional[InstanceState]:
        state = self._states.get(instance_id)
        if state is None:
            return None
        unknown = set(patch) - _PATCH_FIELDS
        if unknown:
            raise ValueError(f"unsupported state fields: {sorted(unknown)}")
        self._set_status(state, status)
        for key, value in patch.items():
            setattr(state, key, value)
        if state.status == CONNECTED:
            state.pairing_code = None
        self._update_metrics()
        return dataclasses.replace(state)

    def _set_status(
        self, state: InstanceState, status: str, *, reason: Optional[str] = None
    ) -> None:
        previous = state.status or "unknown"
        if previous != status:
            if reason:
                LOGGER.info(
                    "stage=state_transition instance=%s from=%s to=%s reason=%s",
                    state.id,
                    previous,
                    status,
                    reason,
                )
            else:
                LOGGER.info(
                    "stage=state_transition instance=%s from=%s to=%s",
                    state.id,
                    previous,
                    status,
                )
        state.status = status

    async def _pump(
        self, instance_id: str, channel: "asyncio.Queue[AdapterEvent]"
    ) -> None:
        while True:
            event = await channel.get()
            lock = self._locks.get(instance_id)
            if lock is None:
                return
            async with lock:
                outgoing = self._apply_locked(instance_id, event)
            if outgoing is not None:
                self._notify(*outgoing)

    def _apply_locked(
        self, instance_id: str, event: AdapterEvent
    ) -> Optional[tuple[InstanceState, Dict[str, Any]]]:
        state = self._states.get(instance_id)
        if state is None:
            return None
        name = event_name(event)

        if isinstance(event, MessageReceived):
            if state.status == CLOSED:
                return None
            return dataclasses.replace(state), {"type": "message", "messages": event.payload}

        target = next_status(state.status, event)
        if target is None:
            EVENTS_IGNORED.labels(name).inc()
            LOGGER.info(
                "stage=event_ignored instance=%s status=%s event=%s",
                instance_id,
                state.status,
                name,
            )
            return None

        previous = state.status
        if isinstance(event, PairingCodeReady) and target == QR_PENDING:
            self._update_locked(instance_id, target, {"pairing_code": event.code})
            return None

        if isinstance(event, StatusChanged) and target == CONNECTED:
            snapshot = self._update_locked(
                instance_id,
                CONNECTED,
                {"connection_info": event.info, "pairing_code": None, "last_error": None},
            )
            if previous == CONNECTED:
                return None
            return snapshot, {"type": "connected", "info": event.info}

        if isinstance(event, StatusChanged) and target == DISCONNECTED:
            snapshot = self._update_locked(
                instance_id, DISCONNECTED, {"last_error": event.reason}
            )
            return snapshot, {"type": "disconnected", "reason": event.reason}

        EVENTS_IGNORED.labels(name).inc()
        LOGGER.warning(
            "stage=event_unhandled instance=%s status=%s event=%s target=%s",
            instance_id,
            previous,
            name,
            target,
        )
        return None

    def _notify(self, state: InstanceState, payload: Dict[str, Any]) -> None:
        listener = self._listener
        if listener is None:
            return
        try:
            listener(state, payload)
        except Exception:
            LOGGER.exception(
                "stage=listener_failed instance=%s event=%s",
                state.id,
                payload.get("type"),
            )

    def _update_metrics(self) -> None:
        snapshot = self.stats_snapshot()
        INSTANCES_CONNECTED.set(snapshot[CONNECTED])
        INSTANCES_QR_PENDING.set(snapshot[QR_PENDING])
        INSTANCES_DISCONNECTED.set(snapshot[DISCONNECTED])
        INSTANCES_INITIALIZING.set(snapshot[INITIALIZING])


__all__ = ["InstanceRegistry", "EventListener"]
