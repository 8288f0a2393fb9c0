import hashlib
import io

import pytest
from PIL import Image as PILImage

from fm4mirror.models.image import ENTITY_BROADCAST, ENTITY_BROADCAST_ITEM, RESOLUTION_HIGH, RESOLUTION_LOW

from conftest import image_entry, make_image_bytes


def test_generate_hash_is_sha256(images):
    assert images.generate_hash(b"fm4") == hashlib.sha256(b"fm4").hexdigest()


@pytest.mark.asyncio
async def test_store_image_writes_content_addressed_file(images, api, store):
    payload = make_image_bytes(40, 20)
    api.image_payloads["https://img/a.jpg"] = payload

    image = await images.process_and_store_image("https://img/a.jpg", {"alt": "Cover", "hashCode": 7})

    expected_hash = hashlib.sha256(payload).hexdigest()
    assert image.hash == expected_hash
    assert image.file_path == f"{expected_hash}_high.jpeg"
    assert (image.width, image.height) == (40, 20)
    assert image.alt == "Cover"
    assert image.original_hash_code == 7
    assert (images.storage_path / image.file_path).read_bytes() == payload


@pytest.mark.asyncio
async def test_same_bytes_are_stored_once(images, api, store):
    payload = make_image_bytes()
    api.image_payloads["https://img/a.jpg"] = payload
    api.image_payloads["https://mirror/a.jpg"] = payload

    first = await images.process_and_store_image("https://img/a.jpg")
    second = await images.process_and_store_image("https://mirror/a.jpg")

    assert first.id == second.id
    assert len(list(images.storage_path.iterdir())) == 1


@pytest.mark.asyncio
async def test_high_resolution_is_downscaled_to_max_width(images, api):
    api.image_payloads["https://img/big.png"] = make_image_bytes(400, 200, fmt="PNG")

    image = await images.process_and_store_image("https://img/big.png", resolution_type=RESOLUTION_HIGH)

    assert (image.width, image.height) == (100, 50)
    assert image.file_path.endswith("_high.png")
    with PILImage.open(images.storage_path / image.file_path) as stored:
        assert stored.size == (100, 50)


@pytest.mark.asyncio
async def test_low_resolution_is_never_resized(images, api):
    api.image_payloads["https://img/big.jpg"] = make_image_bytes(400, 200)

    image = await images.process_and_store_image("https://img/big.jpg", resolution_type=RESOLUTION_LOW)

    assert (image.width, image.height) == (400, 200)


@pytest.mark.asyncio
async def test_download_failure_and_garbage_return_none(images, api, store):
    assert await images.process_and_store_image("https://img/missing.jpg") is None

    api.image_payloads["https://img/garbage.jpg"] = b"<html>not an image</html>"
    assert await images.process_and_store_image("https://img/garbage.jpg") is None

    assert store.get_image_keys() == set()
    assert list(images.storage_path.iterdir()) == []


@pytest.mark.asyncio
async def test_process_image_versions_picks_widest_and_narrowest(images, api):
    api.image_payloads["https://img/s.jpg"] = make_image_bytes(20, 10, color=(0, 0, 255))
    api.image_payloads["https://img/m.jpg"] = make_image_bytes(60, 30, color=(0, 255, 0))
    api.image_payloads["https://img/l.jpg"] = make_image_bytes(90, 45, color=(255, 0, 0))

    result = await images.process_image_versions(
        image_entry(("https://img/m.jpg", 60), ("https://img/l.jpg", 90), ("https://img/s.jpg", 20))
    )

    assert result["high"].width == 90
    assert result["low"].width == 20
    assert "https://img/m.jpg" not in api.image_calls


@pytest.mark.asyncio
async def test_single_version_serves_both_resolutions(images, api, store):
    api.image_payloads["https://img/only.jpg"] = make_image_bytes()

    processed = await images.process_entity_images(
        ENTITY_BROADCAST, 1, [image_entry(("https://img/only.jpg", 40))]
    )

    assert len(processed) == 1
    refs = store.get_image_references(ENTITY_BROADCAST, 1)
    assert sorted(res for res, _ in refs) == [RESOLUTION_HIGH, RESOLUTION_LOW]
    assert len({image.id for _, image in refs}) == 1
    assert api.image_calls == ["https://img/only.jpg"]


@pytest.mark.asyncio
async def test_entity_images_are_processed_once(images, api, store):
    api.image_payloads["https://img/hi.jpg"] = make_image_bytes(80, 40)
    api.image_payloads["https://img/lo.jpg"] = make_image_bytes(20, 10)
    entries = [image_entry(("https://img/hi.jpg", 80), ("https://img/lo.jpg", 20))]

    first = await images.process_entity_images(ENTITY_BROADCAST, 1, entries)
    second = await images.process_entity_images(ENTITY_BROADCAST, 1, entries)

    assert len(first) == 2
    assert second == []
    assert len(api.image_calls) == 2
    assert len(store.get_image_references(ENTITY_BROADCAST, 1)) == 2


def test_orphan_cleanup_only_touches_image_named_files(images, store):
    known_hash = "a" * 64
    store.insert_image({
        "hash": known_hash, "resolution_type": RESOLUTION_HIGH,
        "file_path": f"{known_hash}_high.jpg", "width": 1, "height": 1, "file_size": 1,
    })
    storage = images.storage_path
    (storage / f"{known_hash}_high.jpg").write_bytes(b"x")
    (storage / f"{'b' * 64}_low.webp").write_bytes(b"x")
    (storage / f"{known_hash}_low.png").write_bytes(b"x")
    (storage / "notes.txt").write_bytes(b"x")
    (storage / "cover.jpg").write_bytes(b"x")

    result = images.cleanup_orphaned_image_files()

    assert result == {"deleted": 2, "errors": []}
    assert sorted(p.name for p in storage.iterdir()) == sorted([f"{known_hash}_high.jpg", "notes.txt", "cover.jpg"])


@pytest.mark.asyncio
async def test_cleanup_unreferenced_removes_rows_then_files(images, api, store):
    api.image_payloads["https://img/a.jpg"] = make_image_bytes()
    image = await images.process_and_store_image("https://img/a.jpg")
    assert (images.storage_path / image.file_path).exists()

    result = images.cleanup_unreferenced_images()

    assert result["deletedRecords"] == 1
    assert result["deletedFiles"] == 1
    assert store.get_image_by_hash(image.hash, RESOLUTION_HIGH) is None
    assert not (images.storage_path / image.file_path).exists()


def test_get_image_path(images, store):
    assert images.get_image_path("c" * 64) is None
    store.insert_image({
        "hash": "c" * 64, "resolution_type": RESOLUTION_LOW,
        "file_path": f"{'c' * 64}_low.png", "width": 1, "height": 1, "file_size": 1,
    })
    path = images.get_image_path("c" * 64, RESOLUTION_LOW)
    assert path == images.storage_path / f"{'c' * 64}_low.png"
    assert images.content_type_for(path) == "image/png"


@pytest.mark.asyncio
async def test_cleanup_during_low_download_keeps_linked_high_image(images, api, store, monkeypatch):
    api.image_payloads["https://img/hi.jpg"] = make_image_bytes(80, 40)
    api.image_payloads["https://img/lo.jpg"] = make_image_bytes(20, 10)
    download = api.download_image
    cleanups = []

    async def download_with_cleanup(url):
        if url == "https://img/lo.jpg":
            cleanups.append(images.cleanup_unreferenced_images())
        return await download(url)

    monkeypatch.setattr(api, "download_image", download_with_cleanup)

    await images.process_entity_images(
        ENTITY_BROADCAST, 1, [image_entry(("https://img/hi.jpg", 80), ("https://img/lo.jpg", 20))]
    )

    assert cleanups == [{"deletedRecords": 0, "deletedFiles": 0, "errors": []}]
    refs = {res: image for res, image in store.get_image_references(ENTITY_BROADCAST, 1)}
    assert refs[RESOLUTION_HIGH].resolution_type == RESOLUTION_HIGH
    assert refs[RESOLUTION_HIGH].width == 80
    assert refs[RESOLUTION_LOW].width == 20
    assert (images.storage_path / refs[RESOLUTION_HIGH].file_path).exists()
    assert (images.storage_path / refs[RESOLUTION_LOW].file_path).exists()


def test_deleted_image_ids_are_not_reused(store):
    first = store.insert_image({"hash": "d" * 64, "resolution_type": RESOLUTION_HIGH, "file_path": "d"})
    assert store.delete_unreferenced_images() == 1

    second = store.insert_image({"hash": "e" * 64, "resolution_type": RESOLUTION_LOW, "file_path": "e"})

    assert second.id != first.id


def _mpo_bytes():
    buffer = io.BytesIO()
    first = PILImage.new("RGB", (40, 20), (10, 20, 30))
    second = PILImage.new("RGB", (40, 20), (30, 20, 10))
    first.save(buffer, format="MPO", save_all=True, append_images=[second])
    return buffer.getvalue()


@pytest.mark.asyncio
async def test_camera_jpeg_is_stored_as_jpeg_and_cleaned_up(images, api, store):
    api.image_payloads["https://img/camera.jpg"] = _mpo_bytes()

    image = await images.process_and_store_image("https://img/camera.jpg")

    assert image.file_path.endswith("_high.jpeg")
    assert images.content_type_for(images.storage_path / image.file_path) == "image/jpeg"

    result = images.cleanup_unreferenced_images()

    assert result["deletedRecords"] == 1
    assert result["deletedFiles"] == 1
    assert list(images.storage_path.iterdir()) == []


@pytest.mark.asyncio
async def test_cleanup_removes_files_of_any_decoded_format(images, api, store):
    api.image_payloads["https://img/a.bmp"] = make_image_bytes(fmt="BMP")

    image = await images.process_and_store_image("https://img/a.bmp", resolution_type=RESOLUTION_LOW)
    assert image.file_path.endswith("_low.bmp")

    result = images.cleanup_unreferenced_images()

    assert result["deletedFiles"] == 1
    assert list(images.storage_path.iterdir()) == []


@pytest.mark.asyncio
async def test_identical_images_of_two_owners_share_rows(images, api, store):
    high_bytes = make_image_bytes(80, 40)
    low_bytes = make_image_bytes(20, 10)
    api.image_payloads.update({
        "https://img/show/hi.jpg": high_bytes,
        "https://img/show/lo.jpg": low_bytes,
        "https://img/song/hi.jpg": high_bytes,
        "https://img/song/lo.jpg": low_bytes,
    })

    await images.process_entity_images(
        ENTITY_BROADCAST, 1, [image_entry(("https://img/show/hi.jpg", 80), ("https://img/show/lo.jpg", 20))]
    )
    await images.process_entity_images(
        ENTITY_BROADCAST_ITEM, 5, [image_entry(("https://img/song/hi.jpg", 80), ("https://img/song/lo.jpg", 20))]
    )

    assert store.get_image_keys() == {
        (hashlib.sha256(high_bytes).hexdigest(), RESOLUTION_HIGH),
        (hashlib.sha256(low_bytes).hexdigest(), RESOLUTION_LOW),
    }
    assert len(list(images.storage_path.iterdir())) == 2

    show = {res: image.id for res, image in store.get_image_references(ENTITY_BROADCAST, 1)}
    song = {res: image.id for res, image in store.get_image_references(ENTITY_BROADCAST_ITEM, 5)}
    assert show == song
    assert set(show) == {RESOLUTION_HIGH, RESOLUTION_LOW}
