import mip_verify.mip_utils as mip_utils

import unittest

import gurobipy
import numpy as np

import mip_verify.gurobi_verification_mip as gurobi_verification_mip


class TestIntervalBounds(unittest.TestCase):
    def test_var(self):
        mip = gurobi_verification_mip.VerificationMIP()
        x = mip.addVar(lb=-1., ub=2.)
        self.assertEqual(mip_utils.interval_bounds(x), (-1., 2.))
        y = mip.addVar()
        self.assertEqual(mip_utils.interval_bounds(y), (-np.inf, np.inf))

    def test_linexpr(self):
        mip = gurobi_verification_mip.VerificationMIP()
        x = mip.addVar(lb=-1., ub=2.)
        y = mip.addVar(lb=0., ub=3.)
        lo, up = mip_utils.interval_bounds(2 * x - y + 1)
        self.assertAlmostEqual(lo, -4.)
        self.assertAlmostEqual(up, 5.)
        lo, up = mip_utils.interval_bounds(gurobipy.LinExpr(3.))
        self.assertEqual((lo, up), (3., 3.))
        z = mip.addVar(lb=0.)
        lo, up = mip_utils.interval_bounds(x - z)
        self.assertEqual(lo, -np.inf)
        self.assertAlmostEqual(up, 2.)

    def test_number(self):
        self.assertEqual(mip_utils.interval_bounds(2.5), (2.5, 2.5))


class TestTightBounds(unittest.TestCase):
    def setUp(self):
        self.mip = gurobi_verification_mip.VerificationMIP()
        self.x = self.mip.addVars(2, lb=-1., ub=1.)
        # x0 + x1 <= 0.5, x0 - x1 >= -1
        self.mip.addLConstr(self.x[0] + self.x[1], gurobipy.GRB.LESS_EQUAL,
                            0.5)
        self.mip.addLConstr(self.x[0] - self.x[1],
                            gurobipy.GRB.GREATER_EQUAL, -1.)

    def test_upper(self):
        expr = self.x[0] + self.x[1]
        self.assertAlmostEqual(mip_utils.interval_bounds(expr)[1], 2.)
        self.assertAlmostEqual(mip_utils.tight_upperbound(self.mip, expr),
                               0.5)
        # Never looser than the given bound.
        self.assertAlmostEqual(
            mip_utils.tight_upperbound(self.mip, expr, 0.2), 0.2)

    def test_lower(self):
        expr = self.x[0] - self.x[1]
        self.assertAlmostEqual(mip_utils.tight_lowerbound(self.mip, expr),
                               -1.)
        self.assertAlmostEqual(
            mip_utils.tight_lowerbound(self.mip, expr, -0.5), -0.5)

    def test_write_back(self):
        # x1 <= 0.5 - x0 and x1 <= x0 + 1, so x1 <= 0.75
        up = mip_utils.tight_upperbound(self.mip, self.x[1])
        self.assertAlmostEqual(up, 0.75)
        self.assertAlmostEqual(self.x[1].UB, 0.75)
        lo = mip_utils.tight_lowerbound(self.mip, self.x[1])
        self.assertAlmostEqual(lo, -1.)
        self.assertAlmostEqual(self.x[1].LB, -1.)

    def test_infeasible(self):
        self.mip.addLConstr(self.x[0], gurobipy.GRB.GREATER_EQUAL, 2.)
        expr = self.x[0] + 2 * self.x[1]
        self.assertEqual(mip_utils.tight_upperbound(self.mip, expr), 3.)
        self.assertEqual(mip_utils.tight_lowerbound(self.mip, expr), -3.)

    def test_unbounded(self):
        y = self.mip.addVar(lb=0.)
        expr = self.x[0] + y
        self.assertEqual(mip_utils.tight_upperbound(self.mip, expr), np.inf)
        self.assertAlmostEqual(mip_utils.tight_lowerbound(self.mip, expr),
                               -1.)

    def test_resource_limit(self):
        # A mixed-integer model solved with no time at all. Whatever the
        # solver returns, the bounds are never loosened.
        z = self.mip.addVars(2, lb=0., ub=1., vtype=gurobipy.GRB.BINARY)
        self.mip.addLConstr(self.x[0], gurobipy.GRB.LESS_EQUAL, z[0] - 0.3)
        self.mip.addLConstr(self.x[1], gurobipy.GRB.LESS_EQUAL, z[1] - 0.2)
        self.mip.build_options.time_limit = 0.
        expr = self.x[0] - self.x[1] + z[0]
        lo, up = mip_utils.interval_bounds(expr)
        self.assertLessEqual(mip_utils.tight_upperbound(self.mip, expr), up)
        self.assertGreaterEqual(mip_utils.tight_lowerbound(self.mip, expr),
                                lo)

    def test_tight_bounds_skip_solver(self):
        mip = gurobi_verification_mip.VerificationMIP()
        x = mip.addVars(2, lb=0., ub=1.)
        self.assertEqual(mip_utils.tight_bounds(mip, x[0] + x[1]), (0., 2.))
        self.assertEqual(mip_utils.tight_bounds(mip, -x[0] - 1), (-2., -1.))
        # The model was never solved.
        self.assertEqual(mip.gurobi_model.status, gurobipy.GRB.Status.LOADED)

    def test_tight_bounds(self):
        lo, up = mip_utils.tight_bounds(self.mip, self.x[0] + self.x[1])
        self.assertAlmostEqual(lo, -2.)
        self.assertAlmostEqual(up, 0.5)
        # The upper bound turns out negative, the lower bound is not
        # computed.
        self.mip.addLConstr(self.x[0], gurobipy.GRB.LESS_EQUAL, -0.5)
        lo, up = mip_utils.tight_bounds(self.mip, self.x[0] + 0.2)
        self.assertAlmostEqual(lo, -0.8)
        self.assertAlmostEqual(up, -0.3)

    def test_check_finite_bounds(self):
        mip_utils.check_finite_bounds(-1., 1., "relu")
        with self.assertRaises(mip_utils.UnboundedScalarError):
            mip_utils.check_finite_bounds(-np.inf, 1., "relu")


if __name__ == "__main__":
    unittest.main()
