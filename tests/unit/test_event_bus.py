import threading
from vsz.infrastructure.event_bus import EventBus
from vsz.domain.events import Event


class MockEvent(Event):
    message: str


class OtherEvent(Event):
    pass


def test_event_bus_subscribe_publish():
    bus = EventBus()
    received_events = []

    def callback(event: MockEvent):
        received_events.append(event)

    bus.subscribe(MockEvent, callback)

    event = MockEvent(message="hello")
    bus.publish(event)

    assert len(received_events) == 1
    assert received_events[0].message == "hello"


def test_event_bus_multiple_subscribers():
    bus = EventBus()
    results = {"a": False, "b": False}

    bus.subscribe(MockEvent, lambda e: results.update({"a": True}))
    bus.subscribe(MockEvent, lambda e: results.update({"b": True}))

    bus.publish(MockEvent(message="test"))

    assert results["a"] is True
    assert results["b"] is True


def test_event_bus_decorator_subscribe():
    bus = EventBus()
    received = []

    @bus.subscribe(MockEvent)
    def on_event(event: MockEvent):
        received.append(event)

    bus.publish(MockEvent(message="decorator"))
    assert len(received) == 1
    assert received[0].message == "decorator"


def test_event_bus_unsubscribe():
    bus = EventBus()
    received = []
    bus.subscribe(MockEvent, received.append)
    bus.unsubscribe(MockEvent, received.append)
    bus.publish(MockEvent(message="ignored"))
    assert received == []


def test_event_bus_dispatches_by_type():
    bus = EventBus()
    received = []
    bus.subscribe(OtherEvent, received.append)
    bus.publish(MockEvent(message="not for you"))
    assert received == []


def test_event_bus_reentrant_publish():
    bus = EventBus()
    received = []

    @bus.subscribe(MockEvent)
    def forward(event: MockEvent):
        bus.publish(OtherEvent())

    bus.subscribe(OtherEvent, received.append)
    bus.publish(MockEvent(message="x"))
    assert len(received) == 1


def test_event_bus_serializes_delivery():
    bus = EventBus()
    active = []
    overlaps = []
    lock = threading.Lock()

    @bus.subscribe(MockEvent)
    def slow(event: MockEvent):
        with lock:
            active.append(event.message)
            if len(active) > 1:
                overlaps.append(tuple(active))
        threading.Event().wait(0.01)
        with lock:
            active.remove(event.message)

    threads = [threading.Thread(target=bus.publish, args=(MockEvent(message=str(i)),)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert overlaps == []


def test_event_bus_raising_subscriber_is_isolated(caplog):
    bus = EventBus()
    received = []

    @bus.subscribe(MockEvent)
    def broken(event: MockEvent):
        raise RuntimeError("handler bug")

    bus.subscribe(MockEvent, received.append)

    with caplog.at_level("ERROR"):
        bus.publish(MockEvent(message="still delivered"))

    assert [e.message for e in received] == ["still delivered"]
    assert "EVENT_HANDLER_FAILED" in caplog.text
