"""
Adaptive Control Plane — Experience Replay Buffer Tests
"""

import os
import random
import sys
import threading
import unittest

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _project_root)

from controlplane.replay import ExperienceReplayBuffer
from controlplane.types import AssignmentFeatures, Experience, Outcome


def _exp(i):
    return Experience(
        predicted_target=f"shard-{i}",
        features=AssignmentFeatures(0.5, 0.5, 1.0, 1.0),
        outcome=Outcome(latency=float(i), load=0.1, success=True),
        timestamp=float(i),
    )


class TestExperienceReplayBuffer(unittest.TestCase):

    def test_capacity_bound_evicts_oldest(self):
        buf = ExperienceReplayBuffer(capacity=5)
        for i in range(8):
            buf.append(_exp(i))
        self.assertEqual(len(buf), 5)
        self.assertEqual(buf.evicted, 3)
        self.assertEqual([e.predicted_target for e in buf.recent(5)][0], "shard-3")

    def test_recent_oldest_first(self):
        buf = ExperienceReplayBuffer(capacity=100)
        for i in range(10):
            buf.append(_exp(i))
        recent = buf.recent(3)
        self.assertEqual([e.timestamp for e in recent], [7.0, 8.0, 9.0])
        self.assertEqual(len(buf.recent(50)), 10)

    def test_sample_without_replacement(self):
        buf = ExperienceReplayBuffer(capacity=100)
        for i in range(20):
            buf.append(_exp(i))
        sample = buf.sample(10, random.Random(7))
        self.assertEqual(len(sample), 10)
        self.assertEqual(len({e.timestamp for e in sample}), 10)
        self.assertEqual(len(buf.sample(50)), 20)

    def test_reads_do_not_consume(self):
        buf = ExperienceReplayBuffer(capacity=10)
        for i in range(4):
            buf.append(_exp(i))
        buf.recent(4)
        buf.sample(2)
        self.assertEqual(len(buf), 4)

    def test_concurrent_appends(self):
        buf = ExperienceReplayBuffer(capacity=500)

        def worker(offset):
            for i in range(200):
                buf.append(_exp(offset + i))

        threads = [threading.Thread(target=worker, args=(k * 1000,)) for k in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        snap = buf.snapshot()
        self.assertEqual(snap["size"], 500)
        self.assertEqual(snap["appended"], 800)
        self.assertEqual(snap["evicted"], 300)

    def test_clear(self):
        buf = ExperienceReplayBuffer(capacity=3)
        for i in range(5):
            buf.append(_exp(i))
        buf.clear()
        self.assertEqual(buf.snapshot(), {
            "size": 0, "capacity": 3, "appended": 0, "evicted": 0,
        })

    def test_invalid_capacity(self):
        with self.assertRaises(ValueError):
            ExperienceReplayBuffer(capacity=0)


if __name__ == "__main__":
    unittest.main()
