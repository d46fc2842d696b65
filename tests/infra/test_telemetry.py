from __future__ import annotations

import threading
import unittest

from digestq.observability.telemetry import (
    counter,
    get_counters,
    get_latency_stats,
    reset_counters,
    reset_latencies,
    time_block,
)


class TelemetryTests(unittest.TestCase):
    def setUp(self):
        reset_latencies()
        reset_counters()

    def test_time_block_appends_ms_suffix(self):
        metric_name = "delivery.email.send.latency"

        with time_block(metric_name):
            pass

        stats = get_latency_stats(metric_name)
        self.assertEqual(stats["count"], 1)
        self.assertGreaterEqual(stats["p95"], 0.0)
        self.assertEqual(get_latency_stats("delivery.email.send.latency_ms")["count"], 1)

    def test_time_block_respects_existing_suffix(self):
        metric_name = "pipeline.total_ms"

        with time_block(metric_name):
            pass

        stats = get_latency_stats(metric_name)
        self.assertEqual(stats["count"], 1)

    def test_time_block_records_on_exception(self):
        with self.assertRaises(RuntimeError):
            with time_block("summarizer.call.latency"):
                raise RuntimeError("boom")

        self.assertEqual(get_latency_stats("summarizer.call.latency")["count"], 1)

    def test_empty_stats(self):
        self.assertEqual(get_latency_stats("never.recorded")["count"], 0)

    def test_counter_increments(self):
        before = counter("test.counter", 0)
        counter("test.counter")
        after = counter("test.counter", 0)
        self.assertEqual(after, before + 1)

    def test_counters_filtered_by_prefix(self):
        counter("window.processed")
        counter("window.released", 2)
        counter("summary.ready")

        self.assertEqual(get_counters("window."), {"window.processed": 1, "window.released": 2})

    def test_counter_is_thread_safe(self):
        def bump():
            for _ in range(500):
                counter("threads.counter")

        threads = [threading.Thread(target=bump) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(get_counters("threads.")["threads.counter"], 4000)


if __name__ == "__main__":
    unittest.main()
