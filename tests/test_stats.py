"""Tests for rolling windows, rolling regression and deviation scoring."""

import os
import statistics
import sys
import unittest

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _project_root)

from controlplane.errors import InsufficientData, InvalidModel
from controlplane.stats import RollingRegression, RollingWindow, deviation_score


class TestRollingWindow(unittest.TestCase):

    def test_evicts_oldest(self):
        w = RollingWindow(3)
        for v in (1, 2, 3, 4):
            w.add(v)
        self.assertEqual(w.values(), [2.0, 3.0, 4.0])
        self.assertEqual(len(w), 3)

    def test_mean_and_stddev(self):
        w = RollingWindow(10)
        for v in (2, 4, 4, 4, 5, 5, 7, 9):
            w.add(v)
        stats = w.stats()
        self.assertEqual(stats.count, 8)
        self.assertAlmostEqual(stats.mean, 5.0)
        self.assertAlmostEqual(stats.stddev, 2.1380899, places=6)

    def test_empty_and_single(self):
        w = RollingWindow(5)
        self.assertEqual(w.stats().count, 0)
        w.add(3)
        self.assertEqual(w.stats().stddev, 0.0)

    def test_require(self):
        w = RollingWindow(5)
        w.add(1)
        with self.assertRaises(InsufficientData):
            w.require(2)
        w.add(2)
        self.assertEqual(w.require(2).count, 2)

    def test_last(self):
        w = RollingWindow(10)
        for v in range(6):
            w.add(v)
        self.assertEqual(w.last(3), [3.0, 4.0, 5.0])
        self.assertEqual(len(w.last(20)), 6)

    def test_invalid_capacity(self):
        with self.assertRaises(ValueError):
            RollingWindow(0)

    def test_moments_track_evictions(self):
        w = RollingWindow(50)
        for i in range(1237):
            w.add(1_000_000 + (i * 7919) % 613)
        values = w.values()
        stats = w.stats()
        self.assertEqual(stats.count, 50)
        self.assertAlmostEqual(stats.mean, statistics.fmean(values), places=6)
        self.assertAlmostEqual(stats.stddev, statistics.stdev(values), places=6)

    def test_clear_resets_moments(self):
        w = RollingWindow(4)
        for v in (100, 200, 300, 400, 500):
            w.add(v)
        w.clear()
        w.add(7)
        w.add(9)
        stats = w.stats()
        self.assertAlmostEqual(stats.mean, 8.0)
        self.assertAlmostEqual(stats.stddev, 1.4142136, places=6)


class TestRollingRegression(unittest.TestCase):

    def test_exact_line(self):
        r = RollingRegression(10)
        for x in range(1, 6):
            r.add(x, 3 * x + 2)
        fit = r.fit()
        self.assertAlmostEqual(fit.slope, 3.0)
        self.assertAlmostEqual(fit.intercept, 2.0)
        self.assertAlmostEqual(fit.r_squared, 1.0)
        self.assertAlmostEqual(fit.predict_x(32), 10.0)
        self.assertAlmostEqual(fit.predict_y(4), 14.0)

    def test_insufficient(self):
        r = RollingRegression(10)
        r.add(1, 1)
        with self.assertRaises(InsufficientData):
            r.fit()
        r.add(2, 2)
        with self.assertRaises(InsufficientData):
            r.fit(min_samples=5)

    def test_constant_x_invalid(self):
        r = RollingRegression(10)
        for y in (1, 2, 3):
            r.add(8000, y)
        with self.assertRaises(InvalidModel):
            r.fit()

    def test_window_bounded(self):
        r = RollingRegression(3)
        for x, y in ((1, 100), (2, 0), (3, 3), (4, 4), (5, 5)):
            r.add(x, y)
        self.assertEqual(len(r), 3)
        self.assertAlmostEqual(r.fit().slope, 1.0)

    def test_flat_y_zero_r_squared(self):
        r = RollingRegression(5)
        for x in (1, 2, 3):
            r.add(x, 10)
        fit = r.fit()
        self.assertEqual(fit.slope, 0.0)
        self.assertEqual(fit.r_squared, 0.0)
        with self.assertRaises(InvalidModel):
            fit.predict_x(20)


class TestDeviationScore(unittest.TestCase):

    def test_scaled_and_capped(self):
        self.assertAlmostEqual(deviation_score(3.0, 1.0, 3.0), 1.0)
        self.assertAlmostEqual(deviation_score(1.5, 1.0, 3.0), 0.5)
        self.assertEqual(deviation_score(100.0, 1.0, 3.0), 1.0)

    def test_non_positive_is_zero(self):
        self.assertEqual(deviation_score(0.0, 1.0, 2.0), 0.0)
        self.assertEqual(deviation_score(-5.0, 1.0, 2.0), 0.0)

    def test_zero_stddev(self):
        self.assertEqual(deviation_score(10.0, 0.0, 3.0), 1.0)
        self.assertEqual(deviation_score(0.0, 0.0, 3.0), 0.0)


if __name__ == "__main__":
    unittest.main()
