from concurrent.futures import ThreadPoolExecutor

from pinlink.gpio.state import PinStateCache


def test_unknown_pin_defaults() -> None:
    cache = PinStateCache()
    snapshot = cache.get("dev-a", 5)
    assert snapshot.value == 0
    assert snapshot.config.mode == "input"
    assert snapshot.config.pull == "none"
    assert snapshot.config.updated_at is None
    assert snapshot.history == ()


def test_history_is_bounded_fifo() -> None:
    cache = PinStateCache()
    for value in range(101):
        cache.set("dev-a", 2, value, "pwm")

    history = cache.history("dev-a", 2)
    assert len(history) == 100
    assert history[0].value == 1
    assert history[-1].value == 100
    assert all(entry.value != 0 for entry in history)
    assert cache.value("dev-a", 2) == 100


def test_value_and_history_move_together() -> None:
    cache = PinStateCache(history_limit=3)
    entry = cache.set("dev-a", 4, 1, "digital")
    snapshot = cache.get("dev-a", 4)
    assert snapshot.value == 1
    assert snapshot.history == (entry,)
    assert entry.to_dict()["type"] == "digital"
    assert "mode" not in entry.to_dict()


def test_recent_returns_tail() -> None:
    cache = PinStateCache()
    for value in range(15):
        cache.set("dev-a", 1, value)
    recent = cache.get("dev-a", 1).recent(10)
    assert [item["value"] for item in recent] == list(range(5, 15))
    assert cache.get("dev-a", 1).recent(0) == []


def test_update_value_does_not_touch_history() -> None:
    cache = PinStateCache()
    cache.update_value("dev-a", 3, 77)
    assert cache.value("dev-a", 3) == 77
    assert cache.history("dev-a", 3) == []


def test_set_config_keeps_previous_pull_when_omitted() -> None:
    cache = PinStateCache()
    cache.set_config("dev-a", 8, "input_pullup", "up")
    config = cache.set_config("dev-a", 8, "output")
    assert config.mode == "output"
    assert config.pull == "up"
    assert config.updated_at is not None


def test_bulk_update_skips_malformed_entries() -> None:
    cache = PinStateCache()
    applied = cache.bulk_update(
        "dev-a",
        [
            {"pin": 1, "value": 1, "mode": "output"},
            {"pin": "x", "value": 1},
            "garbage",  # type: ignore[list-item]
            {"pin": 2},
        ],
    )
    assert applied == 2
    assert cache.value("dev-a", 1) == 1
    assert cache.history("dev-a", 1)[0].mode == "output"
    assert [item["pin"] for item in cache.local_pins("dev-a")] == [1, 2]


def test_devices_are_isolated() -> None:
    cache = PinStateCache()
    cache.set("dev-a", 1, 1)
    assert cache.value("dev-b", 1) == 0
    assert cache.local_pins("dev-b") == []
    assert cache.has_device("dev-a")


def test_lazy_device_creation_is_race_free() -> None:
    cache = PinStateCache()
    with ThreadPoolExecutor(max_workers=16) as pool:
        devices = list(pool.map(lambda _: cache.get_or_create("dev-race"), range(64)))
    assert len({id(device) for device in devices}) == 1


def test_concurrent_writers_keep_history_consistent() -> None:
    cache = PinStateCache()

    def _write(value: int) -> None:
        cache.set("dev-a", 9, value)

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(_write, range(80)))

    history = cache.history("dev-a", 9)
    assert len(history) == 80
    assert cache.value("dev-a", 9) == history[-1].value
