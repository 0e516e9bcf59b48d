import asyncio

from racephotos.model.webhookevents import _redis


class FakeRedis:
    def __init__(self):
        self.data = {}
        self.ttls = {}

    async def exists(self, key):
        return int(key in self.data)

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.data:
            return None
        self.data[key] = value
        self.ttls[key] = ex
        return True


def test_redis_store_marks_once():
    r = FakeRedis()
    store = _redis.WebhookEventStore(r, ttl_seconds=60)

    async def scenario():
        assert await store.is_seen("evt_1") is False
        assert await store.mark_seen("evt_1", "checkout.session.completed")
        assert await store.is_seen("evt_1") is True
        assert await store.mark_seen("evt_1", "checkout.session.completed") \
            is False
        assert await store.is_seen(None) is False

    asyncio.run(scenario())
    assert r.data == {"whevt:evt_1": "checkout.session.completed"}
    assert r.ttls["whevt:evt_1"] == 60


def test_sql_store_records_processed_events(client, shop, db, bib):
    import sqlalchemy as sa
    from racephotos.payments import CHECKOUT_EXPIRED

    event = shop.event(CHECKOUT_EXPIRED, {"id": "mock_" + bib})
    assert shop.deliver(event).status_code == 200
    with db.connect() as conn:
        row = conn.execute(sa.text(
            "SELECT event_type FROM webhook_events_seen WHERE event_id = :e"
        ), {"e": event["id"]}).one()
    assert row.event_type == CHECKOUT_EXPIRED
    assert shop.deliver(event).json()["idempotent"] is True
