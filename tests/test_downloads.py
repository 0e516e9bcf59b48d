import io
import zipfile

import sqlalchemy as sa

from conftest import key_of, token_of


def _access(client, bib):
    data = client.get(f"/api/photos/{bib}").json()["data"]
    return {p["id"]: p["access"] for p in data["photos"]}


def _highres(db, photo_id):
    with db.connect() as conn:
        return conn.execute(sa.text(
            "SELECT highres_url FROM photos WHERE id = :id"
        ), {"id": photo_id}).scalar_one()


def test_download_counts_each_delivery(client, shop, bib):
    bought = shop.buy(bib, 1)
    pid = bought["ids"][0]
    for _ in range(3):
        r = client.get(f"/api/download/{bib}", params={"photo_id": pid})
        assert r.status_code == 200
        assert r.content == f"jpeg-{bib}-0".encode()
        assert r.headers["content-type"] == "image/jpeg"
        assert f"race-photo-{bib}-{pid[-8:]}.jpg" in \
            r.headers["content-disposition"]

    access = _access(client, bib)[pid]
    assert access["download_count"] == 3
    assert access["last_downloaded_at"] is not None


def test_first_unlocked_photo_without_id(client, shop, bib):
    bought = shop.buy(bib, 2)
    r = client.get(f"/api/download/{bib}")
    assert r.status_code == 200
    assert bought["ids"][0][-8:] in r.headers["content-disposition"]


def test_locked_photo_cannot_be_downloaded(client, shop, bib):
    pid = shop.upload(bib, 1)[0]["id"]
    r = client.get(f"/api/download/{bib}", params={"photo_id": pid})
    assert r.status_code == 404
    assert client.get(f"/api/download/{bib}/zip").status_code == 404


def test_expired_url_is_resigned_and_retried(client, shop, net, db, bib):
    bought = shop.buy(bib, 1)
    pid = bought["ids"][0]
    old = _highres(db, pid)
    net.expired_tokens.add(token_of(old))

    r = client.get(f"/api/download/{bib}", params={"photo_id": pid})
    assert r.status_code == 200
    new = _highres(db, pid)
    assert new != old and key_of(new) == key_of(old)
    assert _access(client, bib)[pid]["download_count"] == 1


def test_unfetchable_photo_redirects_without_counting(
    client, shop, net, db, bib,
):
    bought = shop.buy(bib, 1)
    pid = bought["ids"][0]
    net.objects.pop(key_of(_highres(db, pid)))

    r = client.get(f"/api/download/{bib}", params={"photo_id": pid},
                   follow_redirects=False)
    assert r.status_code == 307
    assert r.headers["location"] == _highres(db, pid)
    assert _access(client, bib)[pid]["download_count"] == 0


def test_zip_skips_failed_photos(client, shop, net, db, bib):
    bought = shop.buy(bib, 3)
    ids = bought["ids"]
    net.objects.pop(key_of(_highres(db, ids[1])))

    r = client.get(f"/api/download/{bib}/zip")
    assert r.status_code == 200
    assert r.headers["content-type"] == "application/zip"
    assert f"race-photos-{bib}.zip" in r.headers["content-disposition"]
    assert r.headers["x-photo-count"] == "2"

    with zipfile.ZipFile(io.BytesIO(r.content)) as zf:
        names = zf.namelist()
        assert names == [
            f"photo-1-{ids[0][-8:]}.jpg",
            f"photo-2-{ids[2][-8:]}.jpg",
        ]
        assert zf.read(names[1]) == f"jpeg-{bib}-2".encode()

    counts = {pid: a["download_count"] for pid, a in _access(client, bib).items()}
    assert counts == {ids[0]: 1, ids[1]: 0, ids[2]: 1}


def test_zip_with_nothing_retrievable_fails(client, shop, net, bib):
    shop.buy(bib, 2)
    net.objects.clear()
    r = client.get(f"/api/download/{bib}/zip")
    assert r.status_code == 502
    assert r.json()["success"] is False
