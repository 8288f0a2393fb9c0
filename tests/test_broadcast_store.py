from datetime import timedelta

import pytest

from fm4mirror.models.broadcast import Broadcast
from fm4mirror.models.image import ENTITY_BROADCAST, ENTITY_BROADCAST_ITEM, RESOLUTION_HIGH, RESOLUTION_LOW
from fm4mirror.utils.timeutils import utcnow

from conftest import HOUR, MINUTE, broadcast_data, item_data


START = 1_700_000_000_000


def _image(store, image_hash="a" * 64, resolution=RESOLUTION_HIGH):
    return store.insert_image({
        "hash": image_hash,
        "resolution_type": resolution,
        "file_path": f"{image_hash}_{resolution}.jpeg",
        "width": 10,
        "height": 10,
        "file_size": 100,
    })


def test_upsert_broadcast_inserts_then_updates(store):
    data = broadcast_data(1, "4DI", 20231114, START, START + HOUR)
    data.update(loopStreamId="loop.mp3", loopStreamStart=START, loopStreamEnd=START + HOUR)

    created = store.upsert_broadcast(data)
    assert created.id == 1
    assert created.duration == HOUR
    assert created.done is False
    assert created.loop_stream_id == "loop.mp3"

    data["title"] = "Neuer Titel"
    updated = store.upsert_broadcast(data)
    assert updated.id == 1
    assert store.get_broadcast(20231114, "4DI").title == "Neuer Titel"
    assert len(store.get_all_broadcasts()) == 1


def test_upsert_broadcast_keeps_fields_missing_from_partial_record(store):
    data = broadcast_data(1, "4DI", 20231114, START, START + HOUR, description="lang")
    store.upsert_broadcast(data)

    store.upsert_broadcast({"id": 1, "broadcastDay": 20231114, "programKey": "4DI", "state": "P"})

    stored = store.get_broadcast(20231114, "4DI")
    assert stored.state == "P"
    assert stored.description == "lang"
    assert stored.start_time == START


def test_upsert_broadcast_never_clears_done(store):
    data = broadcast_data(1, "4DI", 20231114, START, START + HOUR)
    broadcast = store.upsert_broadcast(data)
    store.mark_broadcast_done(broadcast.id)

    store.upsert_broadcast({**data, "done": False, "title": "again"})

    assert store.get_broadcast(20231114, "4DI").done is True


def test_upsert_broadcast_requires_identity(store):
    with pytest.raises(ValueError):
        store.upsert_broadcast({"id": 5, "title": "ohne Tag"})


def test_upsert_items_derives_offsets_and_reports_created(store):
    store.upsert_broadcast(broadcast_data(1, "4DI", 20231114, START, START + HOUR))
    items = [
        item_data(10, START + 5 * MINUTE, START + 9 * MINUTE),
        item_data(11, START + 9 * MINUTE, START + 12 * MINUTE, duration=180_000),
    ]

    results = store.upsert_items(1, items)
    assert [created for _, created in results] == [True, True]

    first = results[0][0]
    assert first.start_offset == 5 * MINUTE
    assert first.end_offset == 9 * MINUTE
    assert first.duration == 4 * MINUTE

    again = store.upsert_items(1, [item_data(10, START + 5 * MINUTE, START + 9 * MINUTE, title="Neu")])
    assert again[0][1] is False
    assert store.get_item_ids(1) == {10, 11}
    assert store.get_item_by_item_id(10).title == "Neu"


def test_upsert_items_requires_existing_broadcast(store):
    with pytest.raises(ValueError):
        store.upsert_items(99, [item_data(1, START, START + MINUTE)])


def test_image_insert_is_idempotent_per_hash_and_resolution(store):
    first = _image(store)
    second = _image(store)
    low = _image(store, resolution=RESOLUTION_LOW)

    assert first.id == second.id
    assert low.id != first.id
    assert store.get_image_keys() == {("a" * 64, RESOLUTION_HIGH), ("a" * 64, RESOLUTION_LOW)}


def test_image_references_are_unique(store):
    image = _image(store)
    assert store.add_image_reference(ENTITY_BROADCAST, 1, image.id, RESOLUTION_HIGH) is True
    assert store.add_image_reference(ENTITY_BROADCAST, 1, image.id, RESOLUTION_HIGH) is False
    assert store.add_image_reference(ENTITY_BROADCAST, 1, image.id, RESOLUTION_LOW) is True

    refs = store.get_image_references(ENTITY_BROADCAST, 1)
    assert [res for res, _ in refs] == [RESOLUTION_HIGH, RESOLUTION_LOW]
    assert store.has_image_references(ENTITY_BROADCAST, 1)
    assert not store.has_image_references(ENTITY_BROADCAST_ITEM, 1)


def test_delete_old_broadcasts_removes_items_and_references(store):
    old_start = START
    new_start = START + 40 * 24 * HOUR
    store.upsert_broadcast(broadcast_data(1, "4DI", 20231114, old_start, old_start + HOUR))
    store.upsert_broadcast(broadcast_data(2, "4DI", 20231224, new_start, new_start + HOUR))
    (old_item, _), = store.upsert_items(1, [item_data(10, old_start, old_start + MINUTE)])
    store.upsert_items(2, [item_data(20, new_start, new_start + MINUTE)])

    shared = _image(store, "b" * 64)
    only_old = _image(store, "c" * 64)
    store.add_image_reference(ENTITY_BROADCAST, 1, only_old.id, RESOLUTION_HIGH)
    store.add_image_reference(ENTITY_BROADCAST_ITEM, old_item.id, shared.id, RESOLUTION_HIGH)
    store.add_image_reference(ENTITY_BROADCAST, 2, shared.id, RESOLUTION_HIGH)

    deleted = store.delete_broadcasts_older_than(old_start + 24 * HOUR)

    assert deleted == 1
    assert store.get_broadcast_by_id(1) is None
    assert store.get_broadcast_items(1) == []
    assert store.get_item_ids(2) == {20}
    assert not store.has_image_references(ENTITY_BROADCAST, 1)
    assert not store.has_image_references(ENTITY_BROADCAST_ITEM, old_item.id)

    assert store.delete_unreferenced_images() == 1
    assert store.get_image_keys() == {("b" * 64, RESOLUTION_HIGH)}


def test_delete_old_broadcasts_without_matches(store):
    assert store.delete_broadcasts_older_than(START) == 0


def test_program_keys_and_metadata(store):
    assert store.register_program_key("4DI", "Digital Konfusion") is True
    assert store.register_program_key("4DI", None) is False
    keys = store.get_all_program_keys()
    assert [(k.program_key, k.title) for k in keys] == [("4DI", "Digital Konfusion")]

    assert store.get_metadata("last_full_scrape") is None
    store.set_metadata("last_full_scrape", "1")
    store.set_metadata("last_full_scrape", "2")
    assert store.get_metadata("last_full_scrape") == "2"


def test_full_text_search(store):
    store.upsert_broadcast(broadcast_data(1, "4DI", 20231114, START, START + HOUR, title="Digital Konfusion"))
    store.upsert_broadcast(broadcast_data(2, "4HO", 20231114, START + HOUR, START + 2 * HOUR, title="Homebase"))
    store.upsert_items(1, [item_data(10, START, START + MINUTE, title="Konfusion Remix", interpreter="Bilderbuch")])

    assert [b.id for b in store.search_broadcasts("konfusion")] == [1]
    assert store.count_search_broadcasts("konfusion") == 1
    assert [i.item_id for i in store.search_items("bilderbuch")] == [10]
    assert store.count_search_items("Bilderbuch") == 1

    # updates are reflected through the triggers
    store.upsert_broadcast(broadcast_data(2, "4HO", 20231114, START + HOUR, START + 2 * HOUR, title="Konfusion Spezial"))
    assert {b.id for b in store.search_broadcasts("konfusion")} == {1, 2}


def test_search_ignores_operator_characters(store):
    store.upsert_broadcast(broadcast_data(1, "4DI", 20231114, START, START + HOUR, title="Digital Konfusion"))

    assert store.search_broadcasts('"*()') == []
    assert store.count_search_broadcasts("") == 0
    assert [b.id for b in store.search_broadcasts("digital*")] == [1]


def test_stats(store):
    store.upsert_broadcast(broadcast_data(1, "4DI", 20231114, START, START + HOUR))
    store.upsert_broadcast(broadcast_data(2, "4DI", 20231115, START + 24 * HOUR, START + 25 * HOUR))
    store.register_program_key("4DI")

    stats = store.get_stats()
    assert stats["broadcasts"] == 2
    assert stats["programKeys"] == 1
    assert stats["oldestBroadcast"] == 20231114
    assert stats["newestBroadcast"] == 20231115


def test_session_rolls_back_on_error(store):
    store.upsert_broadcast(broadcast_data(1, "4DI", 20231114, START, START + HOUR))

    with pytest.raises(RuntimeError):
        with store.session() as db:
            db.get(Broadcast, 1).title = "kaputt"
            db.flush()
            raise RuntimeError("boom")

    assert store.get_broadcast_by_id(1).title == "Show 4DI"


def test_updated_at_is_refreshed(store):
    data = broadcast_data(1, "4DI", 20231114, START, START + HOUR)
    store.upsert_broadcast(data)
    with store.session() as db:
        db.get(Broadcast, 1).updated_at = utcnow() - timedelta(days=1)

    store.upsert_broadcast(data)
    assert utcnow() - store.get_broadcast_by_id(1).updated_at < timedelta(minutes=1)
