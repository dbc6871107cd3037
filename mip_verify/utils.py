import gurobipy
import numpy as np

import mip_verify.mip_utils as mip_utils
from mip_verify.mip_utils import is_symbolic


def _check_mip(mip, xs):
    assert (mip is not None), "a VerificationMIP is needed for symbolic input"
    for x in xs:
        mip.check_owned(x)


def relu_with_tightness_slack(x, tightness_slack, mip=None):
    """
    Encode x_rect = max(0, x) as mixed-integer constraints.
    Given the bounds x ∈ [l, u] with l < 0 < u, we introduce a binary
    variable a and
    x_rect <= x - l * (1 - a)
    x_rect >= x
    x_rect <= u * a
    x_rect >= 0
    Besides x_rect we return the tightness slack accumulated so far,
    incremented by x_rect - x * u / (u - l) when x can take either sign. This
    slack is zero on the upper facet of the LP relaxation.
    @param x A number, gurobipy.Var or gurobipy.LinExpr.
    @param tightness_slack A number or gurobipy.LinExpr.
    @param mip The VerificationMIP that x belongs to. Not needed if x is a
    number.
    @return (x_rect, tightness_slack)
    """
    if not is_symbolic(x):
        return max(0., float(x)), tightness_slack
    _check_mip(mip, [x])
    lo, up = mip_utils.tight_bounds(mip, x)
    if up <= 0:
        # x_rect is always 0.
        x_rect = mip.addVar(lb=0., ub=0.)
    elif lo >= 0:
        x_rect = mip.addVar(lb=lo, ub=up)
        mip.addLConstr(x_rect, gurobipy.GRB.EQUAL, x)
    else:
        mip_utils.check_finite_bounds(lo, up, "relu")
        a = mip.addVar(lb=0., ub=1., vtype=gurobipy.GRB.BINARY)
        x_rect = mip.addVar(lb=0., ub=up)
        mip.addLConstr(x_rect, gurobipy.GRB.LESS_EQUAL, x - lo * (1 - a))
        mip.addLConstr(x_rect, gurobipy.GRB.GREATER_EQUAL, x)
        mip.addLConstr(x_rect, gurobipy.GRB.LESS_EQUAL, up * a)
        mip.addLConstr(x_rect, gurobipy.GRB.GREATER_EQUAL, 0.)
        tightness_slack = tightness_slack + x_rect - x * (up / (up - lo))
    return x_rect, tightness_slack


def relu(x, mip=None):
    return relu_with_tightness_slack(x, 0., mip)[0]


def _maximum_survivors(lows, ups):
    """
    The candidates that can attain the maximum. A candidate whose upper bound
    does not exceed the largest lower bound is pruned; the first candidate
    with the largest lower bound always survives.
    """
    best_lower = max(lows)
    first_best = lows.index(best_lower)
    return [
        i for i in range(len(lows)) if ups[i] > best_lower or i == first_best
    ]


def maximum(xs, mip=None):
    """
    Encode x_max = max(xs) as mixed-integer constraints.
    For every candidate x_i that can attain the maximum, we introduce a
    binary variable a_i and
    x_max <= x_i + (1 - a_i) * (max_{j≠i} u_j - l_i)
    x_max >= x_i
    sum_i a_i = 1
    If only one candidate can attain the maximum, x_max = x_i and no binary
    variable is introduced.
    @param xs A non-empty sequence (or array) of numbers/gurobipy.Var/
    gurobipy.LinExpr.
    @param mip The VerificationMIP. Not needed if all xs are numbers.
    """
    xs = list(np.ravel(np.asarray(xs, dtype=object)))
    assert (len(xs) > 0)
    if not any(is_symbolic(x) for x in xs):
        return max(float(x) for x in xs)
    _check_mip(mip, xs)
    if len(xs) == 1:
        return xs[0]
    bounds = [mip_utils.interval_bounds(x) for x in xs]
    lows = [b[0] for b in bounds]
    ups = [b[1] for b in bounds]
    survivors = _maximum_survivors(lows, ups)
    if len(survivors) > 1:
        for i in survivors:
            if is_symbolic(xs[i]):
                ups[i] = mip_utils.tight_upperbound(mip, xs[i], ups[i])
                lows[i] = mip_utils.tight_lowerbound(mip, xs[i], lows[i])
        survivors = _maximum_survivors(lows, ups)
    best_lower = max(lows)
    x_max = mip.addVar(lb=best_lower, ub=max(ups[i] for i in survivors))
    if len(survivors) == 1:
        mip.addLConstr(x_max, gurobipy.GRB.EQUAL, xs[survivors[0]])
        return x_max
    for i in survivors:
        mip_utils.check_finite_bounds(lows[i], ups[i], "maximum")
    a = mip.addVars(len(survivors),
                    lb=0.,
                    ub=1.,
                    vtype=gurobipy.GRB.BINARY)
    for a_i, i in zip(a, survivors):
        up_others = max(ups[j] for j in survivors if j != i)
        mip.addLConstr(x_max, gurobipy.GRB.LESS_EQUAL,
                       xs[i] + (1 - a_i) * (up_others - lows[i]))
        mip.addLConstr(x_max, gurobipy.GRB.GREATER_EQUAL, xs[i])
    mip.addLConstr(gurobipy.quicksum(a), gurobipy.GRB.EQUAL, 1.)
    return x_max


def abs_ge(x, mip=None):
    """
    Return a variable x_abs with x_abs >= |x|. When x can take either sign,
    only x_abs >= x and x_abs >= -x are imposed, so x_abs equals |x| only
    when x_abs is minimized. Only the interval bounds of x are used.
    """
    if not is_symbolic(x):
        return abs(float(x))
    _check_mip(mip, [x])
    lo, up = mip_utils.interval_bounds(x)
    if up < 0:
        x_abs = mip.addVar(lb=-up, ub=-lo)
        mip.addLConstr(x_abs, gurobipy.GRB.EQUAL, -x)
    elif lo > 0:
        x_abs = mip.addVar(lb=lo, ub=up)
        mip.addLConstr(x_abs, gurobipy.GRB.EQUAL, x)
    else:
        x_abs = mip.addVar(lb=0., ub=max(-lo, up))
        mip.addLConstr(x_abs, gurobipy.GRB.GREATER_EQUAL, x)
        mip.addLConstr(x_abs, gurobipy.GRB.GREATER_EQUAL, -x)
    return x_abs


def abs_strict(x, mip=None):
    """
    Return a variable x_abs with x_abs = |x|. When x ∈ [l, u] with
    l < 0 < u, we introduce a binary variable a and
    x_abs <= x + 2 * (-l) * (1 - a)
    x_abs >= x
    x_abs <= -x + 2 * u * a
    x_abs >= -x
    """
    if not is_symbolic(x):
        return abs(float(x))
    _check_mip(mip, [x])
    lo, up = mip_utils.tight_bounds(mip, x)
    if up < 0:
        x_abs = mip.addVar(lb=-up, ub=-lo)
        mip.addLConstr(x_abs, gurobipy.GRB.EQUAL, -x)
    elif lo > 0:
        x_abs = mip.addVar(lb=lo, ub=up)
        mip.addLConstr(x_abs, gurobipy.GRB.EQUAL, x)
    else:
        mip_utils.check_finite_bounds(lo, up, "abs_strict")
        a = mip.addVar(lb=0., ub=1., vtype=gurobipy.GRB.BINARY)
        x_abs = mip.addVar(lb=0., ub=max(-lo, up))
        mip.addLConstr(x_abs, gurobipy.GRB.LESS_EQUAL,
                       x + 2 * (-lo) * (1 - a))
        mip.addLConstr(x_abs, gurobipy.GRB.GREATER_EQUAL, x)
        mip.addLConstr(x_abs, gurobipy.GRB.LESS_EQUAL, -x + 2 * up * a)
        mip.addLConstr(x_abs, gurobipy.GRB.GREATER_EQUAL, -x)
    return x_abs


def set_max_index(x, target_index, tolerance=0., mip=None):
    """
    Constrain x[target_index] to exceed every other entry of x by at least
    tolerance.
    """
    assert (tolerance >= 0)
    assert (mip is not None)
    x = np.ravel(np.asarray(x, dtype=object))
    assert (0 <= target_index < len(x))
    for j in range(len(x)):
        if j != target_index:
            mip.addLConstr(x[j] - x[target_index], gurobipy.GRB.LESS_EQUAL,
                           -tolerance)


def set_unmax_index(x, target_index, tolerance=0., mip=None):
    """
    Constrain some entry of x to exceed x[target_index] by at least
    tolerance.
    """
    assert (tolerance >= 0)
    assert (mip is not None)
    x = np.ravel(np.asarray(x, dtype=object))
    assert (0 <= target_index < len(x))
    x_max = maximum(x, mip)
    mip.addLConstr(x_max - x[target_index], gurobipy.GRB.GREATER_EQUAL,
                   tolerance)


def get_max_index(x):
    """
    The index of the largest entry of a concrete vector, the first one on
    ties.
    """
    return int(np.argmax(np.ravel(np.asarray(x, dtype=np.float64))))


def get_norm(norm_order, v, mip=None, strict_abs=False):
    """
    Compute the norm of a tensor v.
    For a concrete tensor, return the value of the norm.
    For a symbolic tensor, return an expression for the objective: the sum
    of absolute values for norm_order = 1, the sum of squares (not its square
    root) for norm_order = 2, and the maximal absolute value for
    norm_order = np.inf.
    @param strict_abs Use abs_strict instead of abs_ge for norm_order = 1.
    """
    flat_v = list(np.ravel(np.asarray(v, dtype=object)))
    if not any(is_symbolic(x) for x in flat_v):
        flat_v = np.array(flat_v, dtype=np.float64)
        if norm_order == 1:
            return float(np.sum(np.abs(flat_v)))
        elif norm_order == 2:
            return float(np.sqrt(np.sum(flat_v * flat_v)))
        elif norm_order == np.inf:
            return float(np.max(np.abs(flat_v)))
        raise Exception(f"get_norm: unsupported norm order {norm_order}")
    if norm_order == 1:
        abs_fun = abs_strict if strict_abs else abs_ge
        return gurobipy.quicksum([abs_fun(x, mip) for x in flat_v])
    elif norm_order == 2:
        _check_mip(mip, flat_v)
        return gurobipy.quicksum([x * x for x in flat_v])
    elif norm_order == np.inf:
        return maximum([abs_ge(x, mip) for x in flat_v], mip)
    raise Exception(f"get_norm: unsupported norm order {norm_order}")


def get_value(x):
    """
    The value of x in the last solution. x can be a number,
    gurobipy.Var, gurobipy.LinExpr or an array of them.
    """
    if isinstance(x, np.ndarray):
        values = np.empty(x.shape, dtype=np.float64)
        for index in np.ndindex(x.shape):
            values[index] = get_value(x[index])
        return values
    if isinstance(x, gurobipy.Var):
        return float(x.X)
    elif isinstance(x, (gurobipy.LinExpr, gurobipy.QuadExpr)):
        return float(x.getValue())
    return float(x)
