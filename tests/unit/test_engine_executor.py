from __future__ import annotations

import threading
from pathlib import Path
from typing import TYPE_CHECKING

from fakes import PINNED, THING, FakeEnv, FakeHandler, spec

from kube_provisioner.core.state import ResourceStatus, State
from kube_provisioner.engine import ReconcileEngine
from kube_provisioner.engine.errors import PermanentProviderError, TransientProviderError
from kube_provisioner.engine.executor import CancelToken
from kube_provisioner.engine.registry import ResourceTypeRegistry
from kube_provisioner.engine.retry import RetryPolicy
from kube_provisioner.engine.types import Action, ApplyResult, RunStatus

if TYPE_CHECKING:
    from collections.abc import Callable

    from kube_provisioner.core.state import ResourceState
    from kube_provisioner.engine.executor import ProgressCallback
    from kube_provisioner.engine.handlers import AppliedResource, EngineContext
    from kube_provisioner.engine.types import ResourceChange
    from kube_provisioner.resources.base import ResourceSpec


def _stack() -> list[ResourceSpec]:
    return [
        spec("n", label="ns"),
        spec("d", replicas=1, immutable="v1", depends_on=["n"]),
        spec("s", target="${d.echo.replicas}"),
    ]


def _stored(env: FakeEnv) -> dict[str, ResourceState]:
    return State.load(env.engine.state_path).resources


def test_creates_in_order_and_resolves_references(serial_env: FakeEnv) -> None:
    result = serial_env.engine.apply(serial_env.engine.plan(_stack()))

    assert result.ok
    assert result.statuses() == {
        "n": RunStatus.SUCCEEDED,
        "d": RunStatus.SUCCEEDED,
        "s": RunStatus.SUCCEEDED,
    }
    assert serial_env.calls == [("apply", "n"), ("apply", "d"), ("apply", "s")]

    stored = _stored(serial_env)
    # Inputs are stored unresolved; the provider saw the resolved value.
    assert stored["s"].inputs == {"target": "${d.echo.replicas}"}
    assert serial_env.handler.objects[stored["s"].physical_id] == {"target": 1}
    assert stored["s"].dependencies == ["d"]
    assert stored["s"].dependency_fingerprint != ""
    assert stored["n"].status == ResourceStatus.CREATED


def test_failed_dependency_skips_dependents_only(env: FakeEnv) -> None:
    env.handler.fail("apply", "d", PermanentProviderError("quota exceeded"))
    specs = [*_stack(), spec("t", depends_on=["s"]), spec("x", independent=True)]

    result = env.engine.apply(env.engine.plan(specs))

    assert not result.ok
    assert result.statuses() == {
        "n": RunStatus.SUCCEEDED,
        "d": RunStatus.FAILED,
        "s": RunStatus.SKIPPED,
        "t": RunStatus.SKIPPED,
        "x": RunStatus.SUCCEEDED,
    }
    assert result.outcome("d").describe() == "Failed: quota exceeded"
    assert result.outcome("s").describe() == "Skipped: d"
    assert result.outcome("t").blocked_by == "d"
    assert ("apply", "s") not in env.calls
    assert ("apply", "t") not in env.calls
    # A failed create leaves no record behind.
    assert set(_stored(env)) == {"n", "x"}


def test_transient_errors_are_retried(env: FakeEnv) -> None:
    env.handler.fail("apply", "a", TransientProviderError("429"), TransientProviderError("409"))

    result = env.engine.apply(env.engine.plan([spec("a")]))

    assert result.ok
    assert result.outcome("a").attempts == 3
    assert env.calls.count(("apply", "a")) == 3


def test_transient_errors_give_up_after_max_attempts(env: FakeEnv) -> None:
    env.handler.fail("apply", "a", *(TransientProviderError("503") for _ in range(3)))

    result = env.engine.apply(env.engine.plan([spec("a")]))

    outcome = result.outcome("a")
    assert outcome.status == RunStatus.FAILED
    assert outcome.reason == "503"
    assert outcome.attempts == 3


def test_permanent_and_unexpected_errors_are_not_retried(env: FakeEnv) -> None:
    env.handler.fail("apply", "a", PermanentProviderError("forbidden"))
    env.handler.fail("apply", "b", RuntimeError("boom"))

    result = env.engine.apply(env.engine.plan([spec("a"), spec("b")]))

    assert result.outcome("a").attempts == 1
    assert result.outcome("b").attempts == 1
    assert result.outcome("b").describe() == "Failed: boom"
    assert env.calls.count(("apply", "a")) == 1
    assert env.calls.count(("apply", "b")) == 1


def test_failed_update_marks_record_failed(env: FakeEnv) -> None:
    env.engine.apply(env.engine.plan([spec("a", v=1)]))
    env.handler.fail("apply", "a", PermanentProviderError("invalid"))

    result = env.engine.apply(env.engine.plan([spec("a", v=2)]))

    assert result.outcome("a").status == RunStatus.FAILED
    record = _stored(env)["a"]
    assert record.status == ResourceStatus.FAILED
    assert record.inputs == {"v": 1}


def test_replace_creates_before_deleting(serial_env: FakeEnv) -> None:
    serial_env.engine.apply(serial_env.engine.plan(_stack()))
    old_id = _stored(serial_env)["d"].physical_id
    serial_env.handler.calls.clear()

    changed = [
        spec("n", label="ns"),
        spec("d", replicas=1, immutable="v2", depends_on=["n"]),
        spec("s", target="${d.echo.replicas}"),
    ]
    plan = serial_env.engine.plan(changed)
    assert plan.change("d").action == Action.REPLACE
    result = serial_env.engine.apply(plan)

    assert result.ok
    # The dependent is re-applied only after the replacement is complete.
    assert serial_env.calls == [("apply", "d"), ("delete", "d"), ("apply", "s")]
    record = _stored(serial_env)["d"]
    assert record.physical_id != old_id
    assert record.deposed == []
    assert old_id not in serial_env.handler.objects


def test_replace_delete_first(serial_env: FakeEnv) -> None:
    serial_env.engine.apply(serial_env.engine.plan([spec("p", PINNED, immutable="a")]))
    old_id = _stored(serial_env)["p"].physical_id

    result = serial_env.engine.apply(serial_env.engine.plan([spec("p", PINNED, immutable="b")]))

    assert result.ok
    assert serial_env.pinned.calls == [("apply", "p"), ("delete", "p"), ("apply", "p")]
    assert _stored(serial_env)["p"].physical_id != old_id


def test_replace_teardown_failure_keeps_new_state(env: FakeEnv) -> None:
    env.engine.apply(env.engine.plan([spec("a", immutable="v1")]))
    old_id = _stored(env)["a"].physical_id
    env.handler.fail("delete", "a", PermanentProviderError("stuck finalizer"))

    result = env.engine.apply(env.engine.plan([spec("a", immutable="v2")]))

    outcome = result.outcome("a")
    assert outcome.status == RunStatus.FAILED
    assert old_id in (outcome.reason or "")
    record = _stored(env)["a"]
    assert record.inputs == {"immutable": "v2"}
    assert record.physical_id != old_id
    assert record.deposed == [old_id]
    assert record.status == ResourceStatus.FAILED

    # The next run finishes the cleanup.
    plan = env.engine.plan([spec("a", immutable="v2")])
    assert plan.change("a").action == Action.UPDATE
    assert env.engine.apply(plan).ok
    assert _stored(env)["a"].deposed == []
    assert old_id not in env.handler.objects


def test_failed_delete_keeps_record(env: FakeEnv) -> None:
    env.engine.apply(env.engine.plan([spec("a")]))
    env.handler.fail("delete", "a", PermanentProviderError("forbidden"))

    result = env.engine.apply(env.engine.plan([]))

    assert result.outcome("a").status == RunStatus.FAILED
    record = _stored(env)["a"]
    assert record.status == ResourceStatus.FAILED
    assert record.deposed == []


def test_delete_waits_for_former_dependents(env: FakeEnv) -> None:
    env.engine.apply(env.engine.plan([spec("a"), spec("b", depends_on=["a"])]))
    env.handler.fail("apply", "b", PermanentProviderError("denied"))

    # b no longer needs a, and a is removed: a may only go once b moved off it.
    plan = env.engine.plan([spec("b")])
    assert plan.change("b").action == Action.UPDATE
    assert plan.change("a").action == Action.DELETE
    result = env.engine.apply(plan)

    assert result.outcome("b").status == RunStatus.FAILED
    assert result.outcome("a").status == RunStatus.SKIPPED
    assert result.outcome("a").blocked_by == "b"
    assert ("delete", "a") not in env.calls
    assert "a" in _stored(env)


def test_noop_plan_reports_noop_and_writes_nothing(env: FakeEnv) -> None:
    env.engine.apply(env.engine.plan([spec("a")]))
    serial = State.load(env.engine.state_path).serial
    env.handler.calls.clear()

    result = env.engine.apply(env.engine.plan([spec("a")]))

    assert result.ok
    assert result.outcome("a").status == RunStatus.NOOP
    assert result.outcome("a").describe() == "NoOp"
    assert env.calls == []
    assert State.load(env.engine.state_path).serial == serial


class _DurabilityHandler(FakeHandler):
    """Records which records were on disk when each apply started."""

    def __init__(self, state_path: Path) -> None:
        super().__init__()
        self.state_path = state_path
        self.seen: dict[str, list[str]] = {}

    def apply(
        self, ctx: EngineContext, desired: ResourceSpec, prior: ResourceState | None
    ) -> AppliedResource:
        on_disk = State.load(self.state_path).resources if self.state_path.exists() else {}
        self.seen[desired.name] = sorted(on_disk)
        return super().apply(ctx, desired, prior)


def test_dependencies_are_durable_before_dependents_start(tmp_path: Path) -> None:
    state_path = tmp_path / "state.json"
    handler = _DurabilityHandler(state_path)
    registry = ResourceTypeRegistry()
    registry.register(THING, handler)
    engine = ReconcileEngine(
        provider=None,
        registry=registry,
        state_path=state_path,
        parallelism=8,
        retry=RetryPolicy(max_attempts=1, initial_backoff=0, max_backoff=0),
    )

    result = engine.apply(engine.plan([*_stack(), spec("x"), spec("y")]))

    assert result.ok
    assert "n" in handler.seen["d"]
    assert {"n", "d"} <= set(handler.seen["s"])


def test_cancel_skips_operations_not_yet_started(serial_env: FakeEnv) -> None:
    cancel = CancelToken()
    events: list[tuple[str, str]] = []

    def on_progress(change: ResourceChange, event: str) -> None:
        events.append((change.name, event))
        if event == "done":
            cancel.cancel()

    result = serial_env.engine.apply(
        serial_env.engine.plan(_stack()), progress=on_progress, cancel=cancel
    )

    assert result.canceled
    assert not result.ok
    assert result.statuses() == {
        "n": RunStatus.SUCCEEDED,
        "d": RunStatus.SKIPPED,
        "s": RunStatus.SKIPPED,
    }
    assert result.outcome("d").describe() == "Skipped: apply canceled"
    assert serial_env.calls == [("apply", "n")]
    assert set(_stored(serial_env)) == {"n"}
    assert events[:2] == [("n", "start"), ("n", "done")]


def test_progress_events(env: FakeEnv) -> None:
    env.handler.fail("apply", "d", PermanentProviderError("nope"))
    events: list[tuple[str, str]] = []

    env.engine.apply(
        env.engine.plan(_stack()), progress=lambda c, e: events.append((c.name, e))
    )

    assert ("n", "done") in events
    assert ("d", "failed") in events
    assert ("s", "skipped") in events
    assert ("s", "start") not in events


def test_apply_result_summary(env: FakeEnv) -> None:
    env.handler.fail("apply", "d", PermanentProviderError("nope"))

    result = env.engine.apply(env.engine.plan(_stack()))

    assert result.summary()["create"] == 1
    assert result.status_counts() == {
        "pending": 0,
        "in-progress": 0,
        "succeeded": 1,
        "failed": 1,
        "skipped": 1,
        "no-op": 0,
    }


def _event_order(env: FakeEnv, specs: list[ResourceSpec]) -> tuple[ApplyResult, list]:
    events: list[tuple[str, str]] = []
    result = env.engine.apply(
        env.engine.plan(specs), progress=lambda c, e: events.append((c.name, e))
    )
    return result, events


def test_delete_first_replace_waits_for_removed_dependent(serial_env: FakeEnv) -> None:
    serial_env.engine.apply(
        serial_env.engine.plan([spec("d", PINNED, immutable="a"), spec("x", depends_on=["d"])])
    )

    serial_env.handler.calls.clear()
    serial_env.pinned.calls.clear()

    plan = serial_env.engine.plan([spec("d", PINNED, immutable="b")])
    assert plan.change("d").action == Action.REPLACE
    assert plan.change("x").action == Action.DELETE
    result, events = _event_order(serial_env, [spec("d", PINNED, immutable="b")])

    assert result.ok
    assert events.index(("x", "done")) < events.index(("d", "start"))
    assert serial_env.handler.calls == [("delete", "x")]
    assert serial_env.pinned.calls == [("delete", "d"), ("apply", "d")]


def test_create_first_replace_waits_for_removed_dependent(serial_env: FakeEnv) -> None:
    serial_env.engine.apply(
        serial_env.engine.plan([spec("d", immutable="a"), spec("x", depends_on=["d"])])
    )

    result, events = _event_order(serial_env, [spec("d", immutable="b")])

    assert result.ok
    assert events.index(("x", "done")) < events.index(("d", "start"))
    assert serial_env.calls.index(("delete", "x")) < serial_env.calls.index(("delete", "d"))


def test_replace_skipped_when_removed_dependent_fails(env: FakeEnv) -> None:
    specs = [spec("d", PINNED, immutable="a"), spec("x", depends_on=["d"])]
    env.engine.apply(env.engine.plan(specs))
    env.handler.fail("delete", "x", PermanentProviderError("finalizer"))

    result = env.engine.apply(env.engine.plan([spec("d", PINNED, immutable="b")]))

    assert result.outcome("x").status == RunStatus.FAILED
    assert result.outcome("d").status == RunStatus.SKIPPED
    assert result.outcome("d").blocked_by == "x"
    assert env.pinned.calls == [("apply", "d")]


def test_replace_does_not_wait_when_ordering_would_cycle(env: FakeEnv) -> None:
    # y moves from x onto the replaced d while x goes away: x waits for y,
    # y waits for the new d, so d cannot also wait for x.
    env.engine.apply(
        env.engine.plan(
            [spec("d", immutable="a"), spec("x", depends_on=["d"]), spec("y", depends_on=["x"])]
        )
    )

    plan = env.engine.plan([spec("d", immutable="b"), spec("y", depends_on=["d"])])
    result = env.engine.apply(plan)

    assert result.ok
    assert set(_stored(env)) == {"d", "y"}
    assert _stored(env)["y"].dependencies == ["d"]


def _interrupt_on_done(name: str, before: Callable[[], None] | None = None) -> ProgressCallback:
    def on_progress(change: ResourceChange, event: str) -> None:
        if change.name == name and event == "done":
            if before is not None:
                before()
            raise KeyboardInterrupt

    return on_progress


def test_interrupt_cancels_remaining_operations(serial_env: FakeEnv) -> None:
    result = serial_env.engine.apply(
        serial_env.engine.plan(_stack()), progress=_interrupt_on_done("n")
    )

    assert result.canceled
    assert result.statuses() == {
        "n": RunStatus.SUCCEEDED,
        "d": RunStatus.SKIPPED,
        "s": RunStatus.SKIPPED,
    }
    assert result.outcome("s").reason == "apply canceled"
    assert serial_env.calls == [("apply", "n")]
    assert set(_stored(serial_env)) == {"n"}


class _GatedHandler(FakeHandler):
    """Holds the apply of ``slow`` until released."""

    def __init__(self) -> None:
        super().__init__()
        self.release = threading.Event()

    def apply(
        self, ctx: EngineContext, desired: ResourceSpec, prior: ResourceState | None
    ) -> AppliedResource:
        if desired.name == "slow":
            self.release.wait(timeout=5)
        return super().apply(ctx, desired, prior)


def test_interrupt_lets_in_flight_operations_finish(tmp_path: Path) -> None:
    handler = _GatedHandler()
    registry = ResourceTypeRegistry([(THING, handler)])
    engine = ReconcileEngine(
        provider=None,
        registry=registry,
        state_path=tmp_path / "state.json",
        parallelism=2,
        retry=RetryPolicy(max_attempts=1, initial_backoff=0, max_backoff=0),
    )
    specs = [spec("slow"), spec("fast"), spec("after", depends_on=["fast"])]

    result = engine.apply(
        engine.plan(specs), progress=_interrupt_on_done("fast", handler.release.set)
    )

    assert result.canceled
    assert result.statuses() == {
        "slow": RunStatus.SUCCEEDED,
        "fast": RunStatus.SUCCEEDED,
        "after": RunStatus.SKIPPED,
    }
    assert set(State.load(engine.state_path).resources) == {"slow", "fast"}
