import warnings

import gurobipy
import numpy as np

import mip_verify.gurobi_verification_mip as gurobi_verification_mip
from mip_verify.gurobi_verification_mip import SolveStatus


class UnboundedScalarError(ValueError):
    pass


def is_symbolic(x):
    return isinstance(x, (gurobipy.Var, gurobipy.LinExpr))


def interval_bounds(x):
    """
    Compute the bounds of x by interval arithmetic, using only the bounds of
    the variables.
    @param x A gurobipy.Var, a gurobipy.LinExpr or a number.
    @return (lo, up) Floats, possibly infinite.
    """
    if isinstance(x, gurobipy.Var):
        return gurobi_verification_mip.from_gurobi_bound(x.LB),\
            gurobi_verification_mip.from_gurobi_bound(x.UB)
    elif isinstance(x, gurobipy.LinExpr):
        lo = x.getConstant()
        up = x.getConstant()
        for i in range(x.size()):
            coeff = x.getCoeff(i)
            if coeff == 0:
                continue
            var_lo, var_up = interval_bounds(x.getVar(i))
            if coeff > 0:
                lo += coeff * var_lo
                up += coeff * var_up
            else:
                lo += coeff * var_up
                up += coeff * var_lo
        return float(lo), float(up)
    return float(x), float(x)


def check_finite_bounds(lo, up, encoder_name):
    if not (np.isfinite(lo) and np.isfinite(up)):
        raise UnboundedScalarError(
            f"{encoder_name}: the bounds [{lo}, {up}] of the input are not " +
            "finite, cannot form the big-M formulation.")


def _compute_bound_by_optimization(mip, x, sense):
    """
    Optimize x over the model built so far, with the build phase options.
    @return The bound proven by the solver, or None if no bound is proven.
    """
    mip.setObjective(x, sense)
    try:
        status = mip.optimize(mip.build_options)
    except gurobipy.GurobiError as err:
        warnings.warn(f"bound computation failed with gurobi error: {err}")
        return None
    if status == SolveStatus.OPTIMAL or\
            status == SolveStatus.RESOURCE_LIMIT:
        bound = mip.objective_bound()
        if status == SolveStatus.RESOURCE_LIMIT and mip.verbose and\
                bound is not None:
            incumbent = mip.objective_value()
            if incumbent is not None and incumbent != 0:
                gap = abs(1 - bound / incumbent)
                print(f"Hit resource limit computing bound, gap = {gap}")
        return bound
    return None


def tight_upperbound(mip, x, up=None):
    """
    Compute an upper bound of x that is at least as tight as up, by
    maximizing x over the model built so far. If the solver fails or stops
    without proving a bound, up is returned. If x is a variable, the
    tightened bound is written back to the variable.
    @param mip The VerificationMIP which x belongs to.
    @param x A gurobipy.Var or gurobipy.LinExpr.
    @param up The existing upper bound. If None, computed by interval
    arithmetic.
    """
    if up is None:
        up = interval_bounds(x)[1]
    bound = _compute_bound_by_optimization(mip, x, gurobipy.GRB.MAXIMIZE)
    if bound is None:
        return up
    tight_up = min(up, bound)
    if mip.verbose:
        print(f"  Δu = {up - tight_up}")
    if isinstance(x, gurobipy.Var) and tight_up < up:
        mip.set_var_bounds(x, -np.inf, tight_up)
    return tight_up


def tight_lowerbound(mip, x, lo=None):
    """
    Compute a lower bound of x that is at least as tight as lo, by
    minimizing x over the model built so far. See tight_upperbound.
    """
    if lo is None:
        lo = interval_bounds(x)[0]
    bound = _compute_bound_by_optimization(mip, x, gurobipy.GRB.MINIMIZE)
    if bound is None:
        return lo
    tight_lo = max(lo, bound)
    if mip.verbose:
        print(f"  Δl = {tight_lo - lo}")
    if isinstance(x, gurobipy.Var) and tight_lo > lo:
        mip.set_var_bounds(x, tight_lo, np.inf)
    return tight_lo


def tight_bounds(mip, x):
    """
    Return (lo, up) of x. The interval bounds are computed first; the
    solver is only called when x can take either sign.
    """
    lo, up = interval_bounds(x)
    if lo >= 0 or up <= 0:
        return lo, up
    up = tight_upperbound(mip, x, up)
    if up <= 0:
        return lo, up
    lo = tight_lowerbound(mip, x, lo)
    return lo, up
