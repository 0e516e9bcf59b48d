import sqlalchemy as sa

from conftest import key_of, token_of


def test_unknown_bib_is_not_found(client, net, bib):
    r = client.get(f"/api/photos/{bib}")
    assert r.status_code == 404
    assert r.json()["success"] is False


def test_gallery_lists_photos_with_locked_access(client, shop, bib):
    photos = shop.upload(bib, 3)
    r = client.get(f"/api/photos/{bib.lower()}")
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["status"] == "ok"
    assert data["bib_number"] == bib
    assert [p["id"] for p in data["photos"]] == [p["id"] for p in photos]
    assert data["purchasable_count"] == 3
    assert data["survey_completed"] is False
    for p in data["photos"]:
        assert p["access"]["state"] == "LOCKED_NO_SURVEY"
        assert p["is_selected"] is True
        assert "highres_url" not in p
    assert data["selection"]["total_selected"] == 3
    assert data["selection"]["total_price"] == 3498


def test_repeated_reads_keep_one_access_row_per_photo(client, shop, db, bib):
    shop.upload(bib, 2)
    for _ in range(3):
        assert client.get(f"/api/photos/{bib}").status_code == 200
    with db.connect() as conn:
        n = conn.execute(sa.text(
            "SELECT COUNT(*) FROM photo_access WHERE bib_number = :b"
        ), {"b": bib}).scalar_one()
    assert n == 2


def test_fully_bought_bib_is_empty_not_missing(client, shop, bib):
    shop.buy(bib, 2)
    r = client.get(f"/api/photos/{bib}")
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["status"] == "empty"
    assert data["purchasable_count"] == 0
    assert all(p["access"]["state"] == "UNLOCKED" for p in data["photos"])
    assert all("highres_url" in p for p in data["photos"])


def test_stale_urls_are_resigned_on_read(client, shop, net, db, bib):
    photo = shop.upload(bib, 1)[0]
    old_token = token_of(photo["preview_url"])
    with db.begin() as conn:
        conn.execute(sa.text(
            "UPDATE photos SET urls_signed_at = 0, uploaded_at = 0 "
            "WHERE id = :id"
        ), {"id": photo["id"]})

    data = client.get(f"/api/photos/{bib}").json()["data"]
    fresh = data["photos"][0]
    assert token_of(fresh["preview_url"]) != old_token
    assert key_of(fresh["preview_url"]) == key_of(photo["preview_url"])
    with db.connect() as conn:
        row = conn.execute(sa.text(
            "SELECT preview_url, highres_url, urls_signed_at FROM photos "
            "WHERE id = :id"
        ), {"id": photo["id"]}).one()
    assert row.preview_url == fresh["preview_url"]
    assert row.highres_url == fresh["preview_url"]
    assert row.urls_signed_at > 0


def test_failed_resign_keeps_the_old_url(client, shop, net, db, bib):
    photo = shop.upload(bib, 1)[0]
    with db.begin() as conn:
        conn.execute(sa.text(
            "UPDATE photos SET urls_signed_at = 0, uploaded_at = 0 "
            "WHERE id = :id"
        ), {"id": photo["id"]})
    net.fail_sign = True

    r = client.get(f"/api/photos/{bib}")
    assert r.status_code == 200
    assert r.json()["data"]["photos"][0]["preview_url"] == photo["preview_url"]


def test_refresh_url_on_demand(client, shop, net, bib):
    photo = shop.upload(bib, 1)[0]
    r = client.post("/api/photos/refresh-url", json={"photo_id": photo["id"]})
    assert r.status_code == 200
    assert token_of(r.json()["data"]["preview_url"]) != \
        token_of(photo["preview_url"])

    assert client.post("/api/photos/refresh-url", json={}).status_code == 400
    missing = client.post("/api/photos/refresh-url",
                          json={"photo_id": "nope"})
    assert missing.status_code == 404

    net.fail_sign = True
    r = client.post("/api/photos/refresh-url", json={"photo_id": photo["id"]})
    assert r.status_code == 502


def test_unsaved_resign_keeps_the_old_url(client, shop, net, db, bib):
    photo = shop.upload(bib, 1)[0]
    trigger = f"reject_urls_{bib.lower()}"
    with db.begin() as conn:
        conn.execute(sa.text(
            "UPDATE photos SET urls_signed_at = 0, uploaded_at = 0 "
            "WHERE id = :id"
        ), {"id": photo["id"]})
        conn.execute(sa.text(
            f"CREATE TRIGGER {trigger} BEFORE UPDATE OF preview_url ON photos "
            f"WHEN OLD.id = '{photo['id']}' "
            "BEGIN SELECT RAISE(ABORT, 'photos are read-only'); END"
        ))
    try:
        r = client.get(f"/api/photos/{bib}")
    finally:
        with db.begin() as conn:
            conn.execute(sa.text(f"DROP TRIGGER {trigger}"))

    assert r.status_code == 200
    assert r.json()["data"]["photos"][0]["preview_url"] == photo["preview_url"]
    with db.connect() as conn:
        stored = conn.execute(sa.text(
            "SELECT preview_url FROM photos WHERE id = :id"
        ), {"id": photo["id"]}).scalar_one()
    assert stored == photo["preview_url"]
