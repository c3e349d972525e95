from typing import Any

from kv_store.subscriptions import SubscriptionRegistry


def test_notify_calls_callbacks_in_registration_order() -> None:
    registry = SubscriptionRegistry()
    calls: list[tuple[str, Any]] = []
    _ = registry.add("zoom", lambda value: calls.append(("first", value)))
    _ = registry.add("zoom", lambda value: calls.append(("second", value)))
    _ = registry.add("other", lambda value: calls.append(("other", value)))

    registry.notify("zoom", "lg")

    assert calls == [("first", "lg"), ("second", "lg")]


def test_cancel_is_idempotent_and_handle_is_callable() -> None:
    registry = SubscriptionRegistry()
    calls: list[Any] = []
    subscription = registry.add("zoom", calls.append)

    assert subscription.active
    subscription()
    subscription.cancel()
    registry.notify("zoom", "lg")

    assert not subscription.active
    assert calls == []
    assert registry.count("zoom") == 0


def test_cancel_during_dispatch_does_not_affect_current_pass() -> None:
    registry = SubscriptionRegistry()
    calls: list[str] = []
    handles = []

    def first(_value: Any) -> None:
        calls.append("first")
        handles[1].cancel()

    handles.append(registry.add("zoom", first))
    handles.append(registry.add("zoom", lambda _value: calls.append("second")))

    registry.notify("zoom", "lg")
    registry.notify("zoom", "xl")

    assert calls == ["first", "second", "first"]


def test_nested_notify_is_delivered_after_current_pass() -> None:
    registry = SubscriptionRegistry()
    calls: list[tuple[str, Any]] = []

    def first(value: Any) -> None:
        calls.append(("first", value))
        if value == "a":
            registry.notify("zoom", "b")

    _ = registry.add("zoom", first)
    _ = registry.add("zoom", lambda value: calls.append(("second", value)))

    registry.notify("zoom", "a")

    assert calls == [("first", "a"), ("second", "a"), ("first", "b"), ("second", "b")]


def test_failing_callback_does_not_stop_delivery() -> None:
    failures: list[tuple[str, Exception]] = []
    registry = SubscriptionRegistry(on_failure=lambda key, _callback, error: failures.append((key, error)))
    calls: list[Any] = []

    def broken(_value: Any) -> None:
        raise RuntimeError("boom")

    subscription = registry.add("zoom", broken)
    _ = registry.add("zoom", calls.append)

    registry.notify("zoom", "lg")

    assert calls == ["lg"]
    assert [(key, str(error)) for key, error in failures] == [("zoom", "boom")]
    assert subscription.active


def test_failing_callback_without_handler_is_logged(caplog) -> None:
    registry = SubscriptionRegistry()

    def broken(_value: Any) -> None:
        raise RuntimeError("boom")

    _ = registry.add("zoom", broken)
    registry.notify("zoom", "lg")

    assert "failed for key 'zoom'" in caplog.text


def test_clear_removes_everything_and_later_cancel_is_noop() -> None:
    registry = SubscriptionRegistry()
    calls: list[Any] = []
    subscription = registry.add("zoom", calls.append)

    registry.clear()
    subscription.cancel()
    registry.notify("zoom", "lg")

    assert calls == []
    assert repr(subscription) == "Subscription(key='zoom', active=False)"
