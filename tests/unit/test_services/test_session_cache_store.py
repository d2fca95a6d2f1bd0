"""Unit tests for the in-memory session cache store."""

from context_cache.api.services.cache_models import EntityInfo, SummaryLayer
from context_cache.api.services.session_cache_store import SessionCacheStore


def _layer(layer_id, start, end, *, is_milestone=False, entities=()):
    return SummaryLayer(
        id=layer_id,
        summary_text=f"\n\n### summary {layer_id}\n<!-- END -->\n",
        token_count=12,
        message_range=(start, end),
        created_at=50.0,
        is_milestone=is_milestone,
        entities=tuple(entities),
    )


def _populated_store():
    store = SessionCacheStore(clock=lambda: 100.0)
    cache = store.get_or_create("s1")
    cache.milestones.append(_layer("m1", 0, 20, is_milestone=True, entities=["Alice"]))
    cache.layers.append(_layer("l1", 20, 26, entities=["Bob"]))
    cache.entity_map["person:Alice"] = EntityInfo("Alice", "person", "Alice", 0, 0)
    cache.processed_count = 26
    return store


def test_get_or_create_and_clear():
    store = SessionCacheStore(clock=lambda: 42.0)

    cache = store.get_or_create("s1")

    assert store.get_or_create("s1") is cache
    assert cache.last_update_at == 42.0
    assert "s1" in store
    assert len(store) == 1
    assert store.clear("s1") is True
    assert store.clear("s1") is False
    assert store.get("s1") is None


def test_clear_all_returns_count():
    store = SessionCacheStore()
    store.get_or_create("a")
    store.get_or_create("b")

    assert store.clear_all() == 2
    assert len(store) == 0


def test_export_unknown_session_is_none():
    assert SessionCacheStore().export("missing") is None


def test_export_layout():
    data = _populated_store().export("s1")

    assert data["processed_count"] == 26
    assert data["layer_sequence"] == 0
    assert data["last_update_at"] == 100.0
    assert data["milestones"][0]["message_range"] == [0, 20]
    assert data["layers"][0]["id"] == "l1"
    assert data["entity_map"] == [
        [
            "person:Alice",
            {
                "name": "Alice",
                "type": "person",
                "value": "Alice",
                "first_seen_layer_index": 0,
                "last_updated_layer_index": 0,
            },
        ]
    ]


def test_export_then_prewarm_preserves_state():
    store = _populated_store()
    exported = store.export("s1")

    restored = store.prewarm("copy", exported)

    assert store.export("copy") == exported
    assert restored.milestones == store.get("s1").milestones
    assert restored.middle_layer_tokens() == 24


def test_prewarm_keeps_existing_calibration_and_pending_flag():
    store = _populated_store()
    cache = store.get("s1")
    cache.calibration_offset = 128
    cache.token_bias_factor = 1.1
    cache.bias_calibration_samples = 4
    cache.pending_compression = True
    cache.async_compression_in_progress = True

    restored = store.prewarm("s1", store.export("s1"))

    assert restored is not cache
    assert restored.calibration_offset == 128
    assert restored.token_bias_factor == 1.1
    assert restored.bias_calibration_samples == 4
    assert restored.pending_compression is True
    assert restored.async_compression_in_progress is False


def test_prewarm_accepts_partial_dicts():
    store = SessionCacheStore(clock=lambda: 7.0)

    cache = store.prewarm("s1", {"layers": [{"id": "x", "summary_text": "s", "message_range": [0, 3]}]})

    assert cache.layers[0].message_range == (0, 3)
    assert cache.layers[0].token_count == 0
    assert cache.milestones == []
    assert cache.processed_count == 0
    assert cache.last_update_at == 7.0


def test_prewarm_milestones_only_seeds_entity_map():
    store = SessionCacheStore()
    milestones = [
        _layer("m1", 0, 20, is_milestone=True, entities=["Alice", "2024-05-01"]).to_dict(),
        _layer("m2", 20, 40, is_milestone=True, entities=["Alice"]),
    ]

    cache = store.prewarm_milestones_only("s1", milestones, 40)

    assert [m.id for m in cache.milestones] == ["m1", "m2"]
    assert cache.layers == []
    assert cache.processed_count == 40
    assert sorted(cache.entity_map) == ["date:2024-05-01", "person:Alice"]
    assert cache.layer_sequence == 1


def test_prewarm_milestones_only_clamps_negative_progress():
    cache = SessionCacheStore().prewarm_milestones_only("s1", [], -5)
    assert cache.processed_count == 0


def test_prewarm_restores_layer_sequence():
    store = _populated_store()
    store.get("s1").layer_sequence = 7

    restored = store.prewarm("copy", store.export("s1"))

    assert restored.layer_sequence == 7


def test_prewarm_without_layer_sequence_continues_after_entity_map():
    store = SessionCacheStore()
    data = {
        "entity_map": [
            ["preference:tabs", {"name": "tabs", "type": "preference", "value": "tabs", "last_updated_layer_index": 4}],
        ],
    }

    assert store.prewarm("s1", data).layer_sequence == 5
    assert store.prewarm_milestones_only("s2", [], 0).layer_sequence == 0
