from src.subwatch.core.state_store import MONITOR_OFF, MONITOR_ON, StateStore


def test_kv_roundtrip_and_remove(tmp_path):
    store = StateStore(db_path=tmp_path / "state.db")
    assert store.get("missing", "fallback") == "fallback"
    store.set("answer", {"value": 42})
    assert store.get("answer") == {"value": 42}
    assert store.has("answer") is True
    assert store.remove("answer") is True
    assert store.remove("answer") is False
    assert store.has("answer") is False


def test_replace_candidates_drops_non_dict_rows(store):
    out = store.replace_candidates([{"id": "a"}, "junk", {"id": "b"}])
    assert out == {"ok": True, "count": 2, "dropped": 1}
    assert store.load_candidates() == [{"id": "a"}, {"id": "b"}]


def test_record_match_merges_by_target_url(store):
    first = store.record_match({"url": "https://school.example/1", "name": "Ada"})
    second = store.record_match({"targetUrl": "https://school.example/1", "name": "Ada L."})
    third = store.record_match({"url": "https://school.example/2"})
    assert first["replaced"] is False
    assert second["replaced"] is True
    assert third["count"] == 2
    names = {item.get("name") for item in store.load_matched()}
    assert "Ada L." in names
    assert "Ada" not in names


def test_record_match_requires_url(store):
    out = store.record_match({"name": "nobody"})
    assert out["ok"] is False
    assert store.load_matched() == []


def test_clear_matched_reports_removed_count(store):
    store.record_match({"url": "https://school.example/1"})
    store.record_match({"url": "https://school.example/2"})
    assert store.clear_matched() == 2
    assert store.load_matched() == []


def test_settings_defaults_and_updates(store):
    assert store.get_filter_expression("all") == "all"
    assert store.get_include_failing() is False
    assert store.get_concurrency_limit(5) == 5

    out = store.update_settings(filter_expression=">=10", include_failing=True, concurrency_limit=3)
    assert out["ok"] is True
    assert out["settings"] == {"filter_expression": ">=10", "include_failing": True, "concurrency_limit": 3}
    assert store.get_concurrency_limit(5) == 3

    bad = store.update_settings(concurrency_limit=0)
    assert bad["ok"] is False
    assert store.get_concurrency_limit(5) == 3


def test_progress_and_monitor_state(store):
    assert store.load_progress() is None
    assert store.get_monitor_state() == MONITOR_OFF
    store.save_progress(current=2, total=9)
    store.set_monitor_state(MONITOR_ON)
    assert store.load_progress() == {"current": 2, "total": 9}
    assert store.get_monitor_state() == MONITOR_ON
    store.clear_progress()
    assert store.load_progress() is None
