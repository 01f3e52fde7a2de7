import sqlite3

import numpy as np
import pytest

from errors import NotFound, StorageError, ValidationError
from grayscale import Region
from images import random_gray
from template_store import SCHEMA_VERSION, AdTemplate, TemplateStore


def make_template(host="example.com", seed=0, duration=3700, **kwargs):
    return AdTemplate(id=None, host=host, image=random_gray(12, 9, seed=seed),
                      duration=duration, **kwargs)


def test_put_and_get(store):
    template = make_template(region=Region(1, 2, 12, 9), frame_size=(64, 48),
                             fingerprint=0xDEADBEEF, fingerprint_version="v")
    template_id = store.put(template)
    loaded = store.get(template_id)
    assert loaded.id == template_id
    assert loaded.host == "example.com"
    assert loaded.image == template.image
    assert (loaded.width, loaded.height) == (12, 9)
    assert loaded.region == Region(1, 2, 12, 9)
    assert loaded.frame_size == (64, 48)
    assert loaded.fingerprint == 0xDEADBEEF
    assert loaded.fingerprint_version == "v"
    assert loaded.duration == 3700


def test_full_64_bit_fingerprint_survives(store):
    template_id = store.put(make_template(fingerprint=(1 << 64) - 1, fingerprint_version="v"))
    assert store.get(template_id).fingerprint == (1 << 64) - 1


def test_region_is_optional(store):
    loaded = store.get(store.put(make_template()))
    assert loaded.region is None
    assert loaded.frame_size is None
    assert loaded.fingerprint is None


def test_host_is_required(store):
    with pytest.raises(ValidationError):
        store.put(make_template(host=""))


def test_ids_are_unique_and_ordered(store):
    ids = [store.put(make_template(seed=i)) for i in range(10)]
    assert len(set(ids)) == 10
    assert ids == sorted(ids)
    assert [t.id for t in store.query_by_host("example.com")] == ids


def test_put_with_id_overwrites(store):
    template_id = store.put(make_template(seed=1))
    replacement = AdTemplate(id=template_id, host="example.com",
                             image=random_gray(5, 5, seed=2), duration=100)
    assert store.put(replacement) == template_id
    loaded = store.get(template_id)
    assert loaded.image == replacement.image
    assert loaded.duration == 100
    assert len(store.query_by_host("example.com")) == 1


def test_query_by_host_isolation(store):
    store.put(make_template(host="a.example.com", seed=1))
    store.put(make_template(host="a.example.com", seed=2))
    store.put(make_template(host="b.example.com", seed=3))
    store.put(make_template(host="example.com", seed=4))

    for host, count in [("a.example.com", 2), ("b.example.com", 1), ("example.com", 1)]:
        found = store.query_by_host(host)
        assert len(found) == count
        assert all(t.host == host for t in found)


def test_query_is_exact_match(store):
    store.put(make_template(host="www.example.com"))
    assert store.query_by_host("example.com") == []
    assert store.query_by_host("WWW.EXAMPLE.COM") == []


def test_query_unknown_host(store):
    assert store.query_by_host("nothing.example") == []


def test_update_duration_changes_only_duration(store):
    template_id = store.put(make_template(region=Region(0, 0, 12, 9), frame_size=(20, 20)))
    before = store.get(template_id)
    store.update_duration(template_id, 9000)
    after = store.get(template_id)
    assert after.duration == 9000
    assert after.image == before.image
    assert after.region == before.region
    assert after.frame_size == before.frame_size
    assert after.host == before.host


def test_update_unknown_id(store):
    template_id = store.put(make_template())
    with pytest.raises(NotFound):
        store.update_duration(template_id + 1, 5)
    assert store.get(template_id).duration == 3700


def test_get_unknown_id(store):
    with pytest.raises(NotFound):
        store.get(42)


def test_delete_by_host(store):
    store.put(make_template(host="a.example", seed=1))
    store.put(make_template(host="a.example", seed=2))
    kept = store.put(make_template(host="b.example", seed=3))

    assert store.delete_by_host("a.example") == 2
    assert store.query_by_host("a.example") == []
    assert [t.id for t in store.query_by_host("b.example")] == [kept]
    assert store.delete_by_host("a.example") == 0


def test_hosts(store):
    store.put(make_template(host="b.example", seed=1))
    store.put(make_template(host="a.example", seed=2))
    store.put(make_template(host="a.example", seed=3))
    assert store.hosts() == [("a.example", 2), ("b.example", 1)]


def test_reopen_keeps_templates(tmp_path):
    path = tmp_path / "ads.db"
    with TemplateStore(path) as s:
        template_id = s.put(make_template())
    with TemplateStore(path) as s:
        assert s.get(template_id).duration == 3700


def test_migrates_legacy_database(tmp_path):
    path = tmp_path / "legacy.db"
    conn = sqlite3.connect(path)
    conn.execute("CREATE TABLE schema_version (id INTEGER PRIMARY KEY CHECK (id = 1), "
                 "version INTEGER NOT NULL)")
    conn.execute("INSERT INTO schema_version VALUES (1, 1)")
    conn.execute("CREATE TABLE ad_templates (id INTEGER PRIMARY KEY, host TEXT NOT NULL, "
                 "image BLOB NOT NULL, width INTEGER NOT NULL, height INTEGER NOT NULL, "
                 "duration INTEGER NOT NULL)")
    conn.execute("INSERT INTO ad_templates VALUES (?,?,?,?,?,?)",
                 (1700000000000, "example.com", bytes(range(6)), 3, 2, 3700))
    conn.commit()
    conn.close()

    with TemplateStore(path) as s:
        (template,) = s.query_by_host("example.com")
        assert template.id == 1700000000000
        assert template.region is None
        assert template.fingerprint is None
        assert template.image.as_array().tolist() == [[0, 1, 2], [3, 4, 5]]
        new_id = s.put(make_template())
        assert new_id > 1700000000000

    conn = sqlite3.connect(path)
    assert conn.execute("SELECT version FROM schema_version").fetchone()[0] == SCHEMA_VERSION
    conn.close()


def test_unopenable_database(tmp_path):
    with pytest.raises(StorageError):
        TemplateStore(tmp_path / "missing" / "ads.db")


def test_storage_failure_is_distinct(store):
    template_id = store.put(make_template())
    store._get_conn().close()
    for call in (lambda: store.query_by_host("example.com"),
                 lambda: store.put(make_template()),
                 lambda: store.update_duration(template_id, 10),
                 lambda: store.delete_by_host("example.com"),
                 lambda: store.get(template_id)):
        with pytest.raises(StorageError) as info:
            call()
        assert not isinstance(info.value, (NotFound, ValidationError))


def test_image_bytes_round_trip(store):
    image = random_gray(7, 3, seed=9)
    template_id = store.put(AdTemplate(id=None, host="h", image=image, duration=1))
    assert np.array_equal(store.get(template_id).image.as_array(), image.as_array())


def test_unreadable_rows_are_skipped(store):
    kept = store.put(make_template(seed=1))
    broken = store.put(make_template(seed=2))
    bad_hex = store.put(make_template(seed=3, fingerprint=1, fingerprint_version="v"))
    with store._get_conn() as conn:
        conn.execute("UPDATE ad_templates SET width=99 WHERE id=?", (broken,))
        conn.execute("UPDATE ad_templates SET fingerprint='zz' WHERE id=?", (bad_hex,))

    assert [t.id for t in store.query_by_host("example.com")] == [kept]
    with pytest.raises(ValidationError):
        store.get(bad_hex)


@pytest.mark.parametrize("duration", [0, -1, True, 2.5])
def test_store_rejects_invalid_duration(store, duration):
    with pytest.raises(ValidationError):
        store.put(make_template(duration=duration))
    template_id = store.put(make_template())
    with pytest.raises(ValidationError):
        store.update_duration(template_id, duration)
    assert store.get(template_id).duration == 3700
