import unittest

from backend.events import EventBus


class TestEventBus(unittest.IsolatedAsyncioTestCase):
    async def test_every_subscriber_gets_events(self):
        bus = EventBus()
        a = bus.subscribe()
        b = bus.subscribe()

        bus.publish({"type": "mindmap_update", "n": 1})

        self.assertEqual(a.get_nowait()["n"], 1)
        self.assertEqual(b.get_nowait()["n"], 1)

    async def test_full_queue_drops_oldest(self):
        bus = EventBus(maxsize=2)
        q = bus.subscribe()
        for i in range(5):
            bus.publish({"n": i})

        self.assertEqual([q.get_nowait()["n"] for _ in range(q.qsize())], [3, 4])

    async def test_unsubscribe(self):
        bus = EventBus()
        q = bus.subscribe()
        self.assertEqual(bus.subscriber_count, 1)
        bus.unsubscribe(q)
        bus.unsubscribe(q)
        bus.publish({"n": 1})
        self.assertEqual(bus.subscriber_count, 0)
        self.assertTrue(q.empty())


if __name__ == "__main__":
    unittest.main()
