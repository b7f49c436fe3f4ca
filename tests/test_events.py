from deckforge.core.events import StatusBus, StatusChange


def change(entity="source", entity_id="s1", status="processing"):
    return StatusChange(entity=entity, entity_id=entity_id, user_id="u", status=status)


def test_filters_by_entity_and_id():
    bus = StatusBus()
    everything, decks, one_source = [], [], []
    bus.subscribe(everything.append)
    bus.subscribe(decks.append, entity="deck")
    bus.subscribe(one_source.append, entity="source", entity_id="s1")

    bus.publish(change())
    bus.publish(change(entity_id="s2"))
    bus.publish(change(entity="deck", entity_id="d1"))

    assert len(everything) == 3
    assert [c.entity_id for c in decks] == ["d1"]
    assert [c.entity_id for c in one_source] == ["s1"]


def test_unsubscribe():
    bus = StatusBus()
    seen = []
    unsubscribe = bus.subscribe(seen.append)

    bus.publish(change())
    unsubscribe()
    bus.publish(change(status="completed"))

    assert [c.status for c in seen] == ["processing"]


def test_failing_listener_does_not_stop_others():
    bus = StatusBus()
    seen = []

    def broken(_):
        raise RuntimeError("listener bug")

    bus.subscribe(broken)
    bus.subscribe(seen.append)
    bus.publish(change())

    assert len(seen) == 1
