"""
Adaptive Control Plane — Runtime Wiring Tests

Tests:
  - components share the lifecycle manager and replay buffer
  - processed units wake the background lifecycle task
  - push/pull methods reach the right component
  - construction from the repository YAML
"""

import os
import random
import sys
import time
import unittest

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _project_root)

from controlplane import ControlPlane, ControlPlaneConfig
from controlplane.config import ConfigError, LifecycleConfig, OrderingConfig
from controlplane.types import (
    AssignmentFeatures, CycleOutcome, NodeMetric, PerformanceSample, Transaction,
)
from engine.config_loader import ConfigLoader


def _config(**lifecycle):
    return ControlPlaneConfig(lifecycle=LifecycleConfig(**lifecycle))


def _feed(cp, n=100):
    features = AssignmentFeatures(0.7, 0.9, 1.0, 1.0)
    for i in range(n):
        cp.record_feedback("shard-0", features, 40.0, 0.3, i % 10 != 9)


class TestWiring(unittest.TestCase):

    def setUp(self):
        self.cp = ControlPlane(_config(), rng=random.Random(1))

    def test_shared_lifecycle(self):
        self.assertEqual(self.cp.lifecycle.models(), ["assignment", "ordering"])
        self.assertIs(self.cp.lifecycle.buffer, self.cp.buffer)
        _feed(self.cp, 5)
        self.assertEqual(len(self.cp.buffer), 5)

    def test_assign_and_order(self):
        self.cp.load_balancer.register_target("shard-0")
        tx = Transaction("tx-1", "0xabc", size=100, fee_price=10.0)
        self.assertEqual(self.cp.assign(tx).target_id, "shard-0")
        ordered = self.cp.order([tx, Transaction("tx-2", "0xdef", size=900)])
        self.assertEqual([t.tx_id for t in ordered], ["tx-1", "tx-2"])

    def test_ingest_performance_feeds_ordering_and_anomaly(self):
        report = self.cp.ingest_performance(PerformanceSample(1_000_000, 50.0, 8000))
        self.assertFalse(report.anomalous)
        self.assertEqual(self.cp.anomaly.statistics()["analyzed"], 1)
        self.assertEqual(self.cp.ordering._latest_throughput, 1_000_000)

    def test_resources_cut_batch(self):
        self.assertEqual(self.cp.ingest_node_resources(95.0, 40.0), 6800)
        self.assertEqual(self.cp.batch_optimizer.optimal_batch_size(), 6800)

    def test_consensus_pass_through(self):
        self.cp.ingest_node_metric("n1", NodeMetric(latency=5.0, throughput=1_500_000))
        self.assertEqual(self.cp.predict_leader(["n0", "n1"]).leader_id, "n1")
        self.cp.ingest_heartbeat("n0", last_seen=0.0)
        self.cp.ingest_heartbeat("n1", last_seen=98.0)
        report = self.cp.detect_partition(now=100.0)
        self.assertEqual(report.unreachable_nodes, ["n0"])
        report = self.cp.detect_partition({"n2": 99.0}, now=100.0)
        self.assertFalse(report.detected)

    def test_due_cycle_trains_assignment_only(self):
        cp = ControlPlane(_config(update_interval=50))
        _feed(cp)
        self.assertTrue(cp.record_processed(50))
        reports = cp.lifecycle.run_due_cycles()
        self.assertEqual([r.model for r in reports], ["assignment"])
        self.assertIn(reports[0].outcome, (CycleOutcome.PROMOTED, CycleOutcome.REJECTED))

    def test_invalid_config_rejected_at_construction(self):
        with self.assertRaises(ConfigError):
            ControlPlane(ControlPlaneConfig(ordering=OrderingConfig(learning_interval=0)))

    def test_statistics_sections(self):
        stats = self.cp.statistics()
        self.assertEqual(
            set(stats),
            {"batch_optimizer", "anomaly", "ordering", "load_balancer",
             "lifecycle", "consensus", "tasks"},
        )
        self.assertEqual([t["name"] for t in stats["tasks"]], ["lifecycle", "rebalance"])


class TestBackgroundTasks(unittest.TestCase):

    def test_processed_units_wake_lifecycle_task(self):
        cp = ControlPlane(_config(update_interval=10, check_interval=60.0))
        _feed(cp)
        with cp:
            cp.record_processed(10)
            deadline = time.monotonic() + 3.0
            while time.monotonic() < deadline:
                if cp.lifecycle.statistics()["models"]["assignment"]["cycles"]:
                    break
                time.sleep(0.01)
        self.assertEqual(cp.lifecycle.statistics()["models"]["assignment"]["cycles"], 1)
        self.assertFalse(cp.lifecycle.cycle_due)

    def test_stop_is_clean(self):
        cp = ControlPlane()
        cp.start()
        self.assertTrue(cp.stop(timeout=5.0))
        for task in cp.statistics()["tasks"]:
            self.assertFalse(task["running"])


class TestFromLoader(unittest.TestCase):

    def test_repository_yaml(self):
        loader = ConfigLoader(env="prod", project_root=_project_root, environ={})
        cp = ControlPlane.from_loader(loader)
        self.assertEqual(cp.config.log_level, "WARNING")
        self.assertEqual(cp.config.lifecycle.check_interval, 0.5)
        self.assertEqual(cp.config.anomaly.new_address_age, 3600.0)
        self.assertEqual(cp.config.batch_optimizer.adaptation_interval, 3.0)
        self.assertEqual(cp.batch_optimizer.optimal_batch_size(), 8000)

    def test_env_override_reaches_component(self):
        loader = ConfigLoader(
            env="dev", project_root=_project_root,
            environ={"CP_CONFIG__lifecycle__update_interval": "25", "CP_LOG_LEVEL": "WARNING"},
        )
        cp = ControlPlane.from_loader(loader)
        self.assertEqual(cp.lifecycle.config.update_interval, 25)
        self.assertEqual(cp.config.batch_optimizer.adaptation_interval, 1.0)

    def test_balancer_learning_rate_override(self):
        loader = ConfigLoader(
            env="dev", project_root=_project_root,
            environ={"CP_LB_LEARNING_RATE": "0.02"},
        )
        cp = ControlPlane.from_loader(loader)
        self.assertAlmostEqual(cp.lifecycle.learning_rate("assignment"), 0.02)
        self.assertAlmostEqual(cp.lifecycle.learning_rate("ordering"), 0.01)


if __name__ == "__main__":
    unittest.main()
