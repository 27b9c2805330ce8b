import unittest
from unittest.mock import patch
import numpy as np
import gvar
from MCparallel.utils import RAvg, derive_seed, time_seed, SEED_MIX, SEED_MASK


class TestRAvg(unittest.TestCase):
    def setUp(self):
        self.weighted_ravg = RAvg(weighted=True)
        self.unweighted_ravg = RAvg(weighted=False)
        self.test_results = [
            gvar.gvar(1.0, 0.1),
            gvar.gvar(2.0, 0.2),
            gvar.gvar(3.0, 0.3),
        ]
        _means = np.array([1.0, 2.0, 3.0])
        _sdevs = np.array([0.1, 0.2, 0.3])
        self.unweighted_sdev = np.sum(_sdevs**2) ** 0.5 / 3
        self.weighted_sdev = np.sum(1 / _sdevs**2) ** -0.5
        self.weighted_mean = np.sum(_means / _sdevs**2) * self.weighted_sdev**2

    def test_init(self):
        self.assertTrue(self.weighted_ravg.weighted)
        self.assertFalse(self.unweighted_ravg.weighted)
        self.assertEqual(self.weighted_ravg.itn_results, [])
        self.assertEqual(self.weighted_ravg.mean, 0.0)
        self.assertEqual(self.weighted_ravg.sum_neval, 0)

    def test_init_with_results(self):
        ravg = RAvg(weighted=False, itn_results=self.test_results, sum_neval=30)
        self.assertEqual(ravg.nitn, 3)
        self.assertEqual(ravg.mean, 2.0)
        self.assertEqual(ravg.sum_neval, 30)

    def test_add_weighted(self):
        for res in self.test_results:
            self.weighted_ravg.add(res)
        self.assertEqual(len(self.weighted_ravg._wlist), 3)
        self.assertAlmostEqual(self.weighted_ravg.mean, self.weighted_mean)
        self.assertAlmostEqual(self.weighted_ravg.sdev, self.weighted_sdev)

    def test_add_unweighted(self):
        for res in self.test_results:
            self.unweighted_ravg.add(res)
        self.assertEqual(self.unweighted_ravg.mean, 2.0)
        self.assertAlmostEqual(self.unweighted_ravg.sdev, self.unweighted_sdev)
        self.assertAlmostEqual(self.unweighted_ravg._varsum, 0.14)

    def test_zero_variance_is_floored(self):
        self.weighted_ravg.update(0.0, 0.0)
        self.weighted_ravg.update(0.0, 0.0)
        self.assertEqual(self.weighted_ravg.mean, 0.0)
        self.assertLess(self.weighted_ravg.sdev, 1e-20)

    def test_unweighted_chi2_zero_variance(self):
        self.unweighted_ravg.update(1.0, 0.0)
        self.unweighted_ravg.update(1.0, 0.0)
        self.assertEqual(self.unweighted_ravg.chi2, 0.0)

        ravg = RAvg(weighted=False)
        ravg.update(1.0, 0.0)
        ravg.update(2.0, 0.0)
        self.assertTrue(np.isfinite(ravg.chi2))
        self.assertGreater(ravg.chi2, 0.0)

    def test_update(self):
        self.weighted_ravg.update(1.0, 0.01, last_neval=10)
        self.weighted_ravg.update(2.0, 0.04, last_neval=20)
        self.assertEqual(self.weighted_ravg.nitn, 2)
        self.assertEqual(self.weighted_ravg.sum_neval, 30)
        self.assertEqual(self.weighted_ravg.avg_neval, 15)

    def test_extend(self):
        ravg = RAvg(weighted=True, itn_results=self.test_results, sum_neval=30)
        self.weighted_ravg.extend(ravg)
        self.assertEqual(self.weighted_ravg.nitn, 3)
        self.assertEqual(self.weighted_ravg.sum_neval, 30)
        self.assertAlmostEqual(self.weighted_ravg.mean, self.weighted_mean)

    def test_chi2_dof_Q(self):
        for _ in range(3):
            self.weighted_ravg.add(self.test_results[0])
            self.unweighted_ravg.add(self.test_results[0])
        self.assertTrue(np.isclose(self.weighted_ravg.chi2, 0.0))
        self.assertTrue(np.isclose(self.unweighted_ravg.chi2, 0.0))
        self.assertEqual(self.weighted_ravg.dof, 2)
        self.assertAlmostEqual(self.weighted_ravg.Q, 1.0)

    def test_Q_single_estimate(self):
        self.weighted_ravg.add(self.test_results[0])
        self.assertTrue(np.isnan(self.weighted_ravg.Q))

    def test_summary(self):
        for res in self.test_results:
            self.weighted_ravg.add(res)
        summary = self.weighted_ravg.summary()
        self.assertIn("wgt average", summary)
        self.assertEqual(len(summary.splitlines()), 5)
        self.assertIn("average", self.weighted_ravg.summary(weighted=False))

    def test_converged(self):
        self.weighted_ravg.add(gvar.gvar(1.0, 0.01))
        self.assertTrue(self.weighted_ravg.converged(0.1, 0.1))
        self.assertFalse(self.weighted_ravg.converged(0.001, 0.001))


class TestSeeds(unittest.TestCase):
    def test_derive_seed(self):
        self.assertEqual(derive_seed(0, 0), SEED_MIX)
        self.assertEqual(derive_seed(12345, 3), (12345 ^ (3 + SEED_MIX)) & SEED_MASK)

    def test_derive_seed_distinct_per_worker(self):
        seeds = [derive_seed(2024, w) for w in range(64)]
        self.assertEqual(len(set(seeds)), 64)
        for seed in seeds:
            self.assertTrue(0 <= seed < 2**64)

    def test_derive_seed_large_base(self):
        seed = derive_seed(2**70 + 5, 1)
        self.assertTrue(0 <= seed < 2**64)

    @patch("time.time_ns", return_value=2**65 + 7)
    def test_time_seed(self, mock_time_ns):
        self.assertEqual(time_seed(), 7)
        mock_time_ns.assert_called_once()


if __name__ == "__main__":
    unittest.main()
