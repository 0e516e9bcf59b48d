import sqlalchemy as sa


def test_survey_marks_selected_photos(client, shop, db, bib):
    ids = [p["id"] for p in shop.upload(bib, 3)]
    r = shop.survey(bib, ids[:2])
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["redirect_to_payment"] is True
    assert data["runner_email"] == "alex@example.com"
    assert data["selected_photo_ids"] == ids[:2]
    assert "warning" not in data

    gallery = client.get(f"/api/photos/{bib}").json()["data"]
    assert gallery["survey_completed"] is True
    states = {p["id"]: p["access"]["state"] for p in gallery["photos"]}
    assert states == {
        ids[0]: "LOCKED_SURVEYED",
        ids[1]: "LOCKED_SURVEYED",
        ids[2]: "LOCKED_NO_SURVEY",
    }


def test_second_submission_short_circuits(client, shop, db, bib):
    ids = [p["id"] for p in shop.upload(bib, 1)]
    assert shop.survey(bib, ids).status_code == 200

    r = shop.survey(bib, ids, runner_name="Someone Else")
    assert r.status_code == 200
    assert r.json()["data"] == {
        "message": "Survey already completed",
        "redirect_to_payment": True,
    }
    with db.connect() as conn:
        rows = conn.execute(sa.text(
            "SELECT runner_name FROM survey_responses WHERE bib_number = :b"
        ), {"b": bib}).all()
    assert [r.runner_name for r in rows] == ["Alex Runner"]


def test_missing_answers_are_rejected(client, shop, bib):
    ids = [p["id"] for p in shop.upload(bib, 1)]
    assert shop.survey(bib, ids, runner_name="").status_code == 400
    assert shop.survey(bib, ids, waiting_stops_buying=None).status_code == 400
    r = shop.survey(bib, ids, runner_email="not-an-email")
    assert r.status_code == 400
    assert shop.survey(bib, []).status_code == 400


def test_marketing_consent_is_optional(client, shop, bib):
    ids = [p["id"] for p in shop.upload(bib, 1)]
    body = {
        "bib_number": bib,
        "selected_photo_ids": ids,
        "runner_name": "Alex",
        "runner_email": "alex@example.com",
        "social_media_preference": "none",
        "waiting_stops_buying": "no",
    }
    r = client.post("/api/survey", json=body)
    assert r.status_code == 200
    assert r.json()["data"]["marketing_consent"] is False


def test_survey_with_foreign_photo_is_rejected(client, shop, db, bib):
    mine = shop.upload(bib, 1)[0]["id"]
    theirs = shop.upload(bib + "Y", 1)[0]["id"]
    r = shop.survey(bib, [mine, theirs])
    assert r.status_code == 400
    with db.connect() as conn:
        n = conn.execute(sa.text(
            "SELECT COUNT(*) FROM survey_responses WHERE bib_number = :b"
        ), {"b": bib}).scalar_one()
    assert n == 0
