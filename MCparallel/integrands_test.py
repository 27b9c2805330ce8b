import unittest
import pickle
import torch
from MCparallel.integrands import (
    Parameters,
    bind,
    linear_quadratic,
    linear_quadratic_exact,
)


class TestLinearQuadratic(unittest.TestCase):
    def setUp(self):
        self.params = Parameters(p=0.1, q=0.1)

    def test_values(self):
        x = torch.tensor([[0.0, 0.0, 0.0], [1.0, 1.0, 1.0], [0.5, 0.2, 0.1]], dtype=torch.float64)
        fx = torch.empty((3, 1), dtype=torch.float64)
        values = linear_quadratic(x, fx, self.params)
        expected = [0.0, 0.6, 0.1 * 0.8 + 0.1 * 0.30]
        for value, exp in zip(values.tolist(), expected):
            self.assertAlmostEqual(value, exp)
        self.assertTrue(torch.equal(fx[:, 0], values))

    def test_bind(self):
        f = bind(linear_quadratic, Parameters(1.0, 0.0))
        x = torch.tensor([[1.0, 2.0]], dtype=torch.float64)
        fx = torch.empty((1, 1), dtype=torch.float64)
        self.assertAlmostEqual(f(x, fx).item(), 3.0)

    def test_bind_is_picklable(self):
        f = pickle.loads(pickle.dumps(bind(linear_quadratic, self.params)))
        self.assertEqual(f.keywords["params"], self.params)

    def test_parameters_immutable(self):
        with self.assertRaises(AttributeError):
            self.params.p = 1.0

    def test_exact(self):
        self.assertAlmostEqual(linear_quadratic_exact([(0, 1)] * 3, self.params), 0.25)
        # [0,2] x [0,1]: volume 2, mean of x1 is 1, mean of x1**2 is 4/3
        value = linear_quadratic_exact([(0, 2), (0, 1)], Parameters(1.0, 1.0))
        self.assertAlmostEqual(value, 2 * ((1 + 0.5) + (4 / 3 + 1 / 3)))

    def test_exact_flat_domain(self):
        self.assertEqual(linear_quadratic_exact([(0, 1), (2, 2)], self.params), 0.0)


if __name__ == "__main__":
    unittest.main()
