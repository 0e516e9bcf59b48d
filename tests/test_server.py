from racephotos.infra import timings


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_timings_aggregate_recorded_kinds(client, shop, bib):
    shop.upload(bib, 1)
    client.get(f"/api/photos/{bib}")

    r = client.get("/api/timings")
    assert r.status_code == 200
    kinds = {rec["kind"]: rec for rec in r.json()["data"]}
    assert "gallery.fetch" in kinds
    assert "storage.upload" in kinds
    assert kinds["gallery.fetch"]["n"] >= 1
    assert kinds["gallery.fetch"]["mean"] >= 0


def test_aggregates_mean_per_kind():
    timings.record_timing("unit.kind", 0.5)
    timings.record_timing("unit.kind", 1.5)
    rec = {a["kind"]: a for a in timings.aggregates()}["unit.kind"]
    assert rec["n"] == 2
    assert rec["mean"] == 1.0


def test_flush_timings_posts_ndjson_and_resets():
    import asyncio
    import json

    import httpx

    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        lines = request.content.decode().splitlines()
        return httpx.Response(200, json={"accepted": len(lines)})

    async def run():
        timings.reset()
        timings.record_timing("flush.kind", 0.25)
        async with httpx.AsyncClient(
            transport=httpx.MockTransport(handler)
        ) as http:
            return await timings.flush_timings(
                http, "https://collector.test/", "run-1", worker_id="w1"
            )

    assert asyncio.run(run()) == 1
    req = seen[0]
    assert req.url.path == "/v1/metric/flush"
    assert req.headers["x-run-id"] == "run-1"
    assert req.headers["x-worker-id"] == "w1"
    rec = json.loads(req.content.decode().splitlines()[0])
    assert rec["kind"] == "flush.kind" and rec["n"] == 1
    assert timings.aggregates() == []
