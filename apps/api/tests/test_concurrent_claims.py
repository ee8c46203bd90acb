import threading
import unittest
from concurrent.futures import ThreadPoolExecutor

from core.dispatcher import Dispatcher, DomainEvent
from core.observability import COUNTERS, METRIC_DELIVERY_CLAIM_SKIPPED
from models.webhook import DeliveryStatus, EventType
from webhook_test_support import EngineTestCase, SenderStub


def _publish_event() -> DomainEvent:
    return DomainEvent(event_type=EventType.FORM_PUBLISHED, form_id="form-1")


class ConcurrentClaimTests(EngineTestCase):
    def test_racing_executors_send_exactly_once(self) -> None:
        self.use_sender(SenderStub(200, delay=0.05))
        self.register(event_types=[EventType.FORM_PUBLISHED])
        task_id = Dispatcher(self.db, None, self.clock).dispatch(_publish_event())[0]

        workers = 8
        barrier = threading.Barrier(workers)

        def race():
            barrier.wait()
            return self.scheduler.execute(task_id)

        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = list(pool.map(lambda _: race(), range(workers)))

        self.assertEqual(results.count(DeliveryStatus.SUCCESS), 1)
        self.assertEqual(results.count(None), workers - 1)
        self.assertEqual(len(self.sender.calls), 1)
        self.assertEqual(COUNTERS.value(METRIC_DELIVERY_CLAIM_SKIPPED), workers - 1)

        delivery = self.load_delivery(task_id)
        self.assertEqual(delivery.status, DeliveryStatus.SUCCESS)
        self.assertEqual(delivery.attempt_count, 1)

    def test_overlapping_sweeps_deliver_each_task_once(self) -> None:
        self.use_sender(SenderStub(200, delay=0.01))
        for _ in range(5):
            self.register(event_types=[EventType.FORM_PUBLISHED])
        task_ids = Dispatcher(self.db, None, self.clock).dispatch(_publish_event())
        self.assertEqual(len(task_ids), 5)
        self.clock.advance(60)

        sweepers = 4
        barrier = threading.Barrier(sweepers)

        def sweep():
            barrier.wait()
            return self.scheduler.run_due()

        with ThreadPoolExecutor(max_workers=sweepers) as pool:
            list(pool.map(lambda _: sweep(), range(sweepers)))

        sent_ids = [call.headers["X-Webhook-Delivery-Id"] for call in self.sender.calls]
        self.assertEqual(sorted(sent_ids), sorted(str(task_id) for task_id in task_ids))
        for task_id in task_ids:
            delivery = self.load_delivery(task_id)
            self.assertEqual(delivery.status, DeliveryStatus.SUCCESS)
            self.assertEqual(delivery.attempt_count, 1)


if __name__ == "__main__":
    unittest.main()
