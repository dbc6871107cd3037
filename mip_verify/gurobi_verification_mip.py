import enum
import inspect
import os
import tempfile

import gurobipy
import numpy as np


class ForeignVariableError(ValueError):
    pass


class SolveStatus(enum.Enum):
    OPTIMAL = 1
    # The solver stopped on its time/iteration/node limit. The best proven
    # objective bound (and the incumbent, if any) are still meaningful.
    RESOURCE_LIMIT = 2
    INFEASIBLE = 3
    UNBOUNDED = 4
    ERROR = 5


# The solver stopped before proving optimality without detecting
# infeasibility. The incumbent and the proven bound, if any, are kept.
_RESOURCE_LIMIT_CODES = (gurobipy.GRB.Status.TIME_LIMIT,
                         gurobipy.GRB.Status.ITERATION_LIMIT,
                         gurobipy.GRB.Status.NODE_LIMIT,
                         gurobipy.GRB.Status.SOLUTION_LIMIT,
                         gurobipy.GRB.Status.WORK_LIMIT,
                         gurobipy.GRB.Status.MEM_LIMIT,
                         gurobipy.GRB.Status.INTERRUPTED,
                         gurobipy.GRB.Status.USER_OBJ_LIMIT)


def solve_status(gurobi_status):
    """
    Map a gurobi status code to SolveStatus.
    """
    if gurobi_status == gurobipy.GRB.Status.OPTIMAL:
        return SolveStatus.OPTIMAL
    elif gurobi_status in _RESOURCE_LIMIT_CODES:
        return SolveStatus.RESOURCE_LIMIT
    elif gurobi_status in (gurobipy.GRB.Status.INFEASIBLE,
                           gurobipy.GRB.Status.INF_OR_UNBD):
        return SolveStatus.INFEASIBLE
    elif gurobi_status == gurobipy.GRB.Status.UNBOUNDED:
        return SolveStatus.UNBOUNDED
    return SolveStatus.ERROR


def to_gurobi_bound(value):
    """
    Convert ±inf to ±GRB.INFINITY.
    """
    if value >= gurobipy.GRB.INFINITY:
        return gurobipy.GRB.INFINITY
    if value <= -gurobipy.GRB.INFINITY:
        return -gurobipy.GRB.INFINITY
    return float(value)


def from_gurobi_bound(value):
    """
    Convert ±GRB.INFINITY to ±inf.
    """
    if value >= gurobipy.GRB.INFINITY:
        return np.inf
    if value <= -gurobipy.GRB.INFINITY:
        return -np.inf
    return float(value)


class SolverOptions:
    """
    Settings applied to the gurobi model before a solve.
    """
    def __init__(self):
        # Time limit (in seconds) of a single solve. None means no limit.
        self.time_limit = None
        # Print the gurobi log.
        self.output_flag = False
        # gurobi MIPFocus, 0 is balanced, 3 focuses on the bound.
        self.mip_focus = 0
        # Number of solver threads. None leaves the gurobi default.
        self.threads = None
        # Relative MIP gap. None leaves the gurobi default.
        self.mip_gap = None

    def apply(self, gurobi_model):
        gurobi_model.setParam(gurobipy.GRB.Param.OutputFlag,
                              int(self.output_flag))
        gurobi_model.setParam(gurobipy.GRB.Param.MIPFocus, self.mip_focus)
        gurobi_model.setParam(
            gurobipy.GRB.Param.TimeLimit, gurobipy.GRB.INFINITY
            if self.time_limit is None else float(self.time_limit))
        if self.threads is not None:
            gurobi_model.setParam(gurobipy.GRB.Param.Threads, self.threads)
        if self.mip_gap is not None:
            gurobi_model.setParam(gurobipy.GRB.Param.MIPGap, self.mip_gap)

    def print(self):
        for attr in inspect.getmembers(self):
            if not attr[0].startswith('_') and not inspect.ismethod(attr[1]):
                print(f"{attr[0]}: {attr[1]}")


def build_phase_options(time_limit=1.):
    """
    The options for the many bound computations while the model is built.
    Each bound computation gets a short time limit.
    """
    options = SolverOptions()
    options.time_limit = time_limit
    options.mip_focus = 0
    return options


def search_phase_options(time_limit=120.):
    """
    The options for the single solve after the model is assembled.
    """
    options = SolverOptions()
    options.time_limit = time_limit
    options.mip_focus = 3
    return options


class VerificationMIP:
    """
    A gurobi model that is built incrementally by the network encoders. It
    keeps track of every variable it owns, so that expressions built from
    another model's variables are rejected before they reach the solver.

    The model is solved many times while it is being built (once per bound
    computation, with build_options), and once at the end with
    search_options.
    """
    def __init__(self,
                 build_options=None,
                 search_options=None,
                 gurobi_model=None):
        self.build_options = build_phase_options() if build_options is None\
            else build_options
        self.search_options = search_phase_options()\
            if search_options is None else search_options
        assert (isinstance(self.build_options, SolverOptions))
        assert (isinstance(self.search_options, SolverOptions))
        # If set to true, print progress messages while encoding.
        self.verbose = False
        # self.variables[i] is the variable with index i in gurobi_model.
        self.variables = []
        # Continuous variables.
        self.r = []
        # Binary variables.
        self.zeta = []
        if gurobi_model is None:
            self.gurobi_model = gurobipy.Model()
        else:
            self.gurobi_model = gurobi_model
            self.gurobi_model.update()
            for v in self.gurobi_model.getVars():
                self._register(v)
        self.build_options.apply(self.gurobi_model)

    def _register(self, var):
        self.variables.append(var)
        # A model read from file may store a binary as an integer variable
        # with bounds [0, 1].
        if var.VType in (gurobipy.GRB.BINARY, gurobipy.GRB.INTEGER):
            self.zeta.append(var)
        else:
            self.r.append(var)

    def addVars(self,
                num_vars,
                lb=-gurobipy.GRB.INFINITY,
                ub=gurobipy.GRB.INFINITY,
                vtype=gurobipy.GRB.CONTINUOUS,
                name=""):
        """
        @param lb A float, or a list of floats of length num_vars.
        @param ub A float, or a list of floats of length num_vars.
        @param name If a str, the variables are called name_0, name_1, ...
        @return new_vars_list A list of new variables.
        """
        if isinstance(lb, (float, int)):
            lb = [lb] * num_vars
        if isinstance(ub, (float, int)):
            ub = [ub] * num_vars
        assert (len(lb) == num_vars)
        assert (len(ub) == num_vars)
        if vtype not in (gurobipy.GRB.CONTINUOUS, gurobipy.GRB.BINARY):
            raise Exception("Only support continuous or binary variables")
        new_vars = []
        for i in range(num_vars):
            new_vars.append(
                self.gurobi_model.addVar(lb=to_gurobi_bound(lb[i]),
                                         ub=to_gurobi_bound(ub[i]),
                                         vtype=vtype,
                                         name=f"{name}_{i}" if name else ""))
        self.gurobi_model.update()
        for v in new_vars:
            self._register(v)
        return new_vars

    def addVar(self,
               lb=-gurobipy.GRB.INFINITY,
               ub=gurobipy.GRB.INFINITY,
               vtype=gurobipy.GRB.CONTINUOUS,
               name=""):
        var = self.gurobi_model.addVar(lb=to_gurobi_bound(lb),
                                       ub=to_gurobi_bound(ub),
                                       vtype=vtype,
                                       name=name)
        self.gurobi_model.update()
        self._register(var)
        return var

    def owns(self, x):
        """
        Return True if every variable in x (a Var, a LinExpr, a QuadExpr or
        a constant) belongs to this model.
        """
        if isinstance(x, gurobipy.Var):
            index = x.index
            return 0 <= index < len(self.variables) and\
                self.variables[index].sameAs(x)
        elif isinstance(x, gurobipy.LinExpr):
            return all(self.owns(x.getVar(i)) for i in range(x.size()))
        elif isinstance(x, gurobipy.QuadExpr):
            return self.owns(x.getLinExpr()) and all(
                self.owns(x.getVar1(i)) and self.owns(x.getVar2(i))
                for i in range(x.size()))
        return True

    def check_owned(self, x):
        if not self.owns(x):
            raise ForeignVariableError(
                "The expression contains a variable that does not belong " +
                "to this model.")

    def addLConstr(self, lhs, sense, rhs, name=""):
        """
        Add the linear constraint lhs (sense) rhs.
        @param lhs A Var, a LinExpr or a constant.
        @param sense GRB.EQUAL, GRB.LESS_EQUAL or GRB.GREATER_EQUAL
        @param rhs A Var, a LinExpr or a constant.
        @return new constraint object.
        """
        self.check_owned(lhs)
        self.check_owned(rhs)
        if not isinstance(lhs, (gurobipy.Var, gurobipy.LinExpr)):
            lhs = float(lhs)
        if not isinstance(rhs, (gurobipy.Var, gurobipy.LinExpr)):
            rhs = float(rhs)
        return self.gurobi_model.addLConstr(lhs, sense, rhs, name=name)

    def set_var_bounds(self, var, lo, up):
        """
        Intersect the bounds of var with [lo, up]. The bounds are never
        loosened.
        """
        self.check_owned(var)
        lo = to_gurobi_bound(lo)
        up = to_gurobi_bound(up)
        changed = False
        if lo > var.LB:
            var.LB = lo
            changed = True
        if up < var.UB:
            var.UB = up
            changed = True
        if changed:
            self.gurobi_model.update()

    def setObjective(self, expr, sense):
        """
        @param expr A Var, LinExpr or QuadExpr.
        @param sense GRB.MAXIMIZE or GRB.MINIMIZE
        """
        assert (sense == gurobipy.GRB.MAXIMIZE
                or sense == gurobipy.GRB.MINIMIZE)
        self.check_owned(expr)
        if isinstance(expr, gurobipy.Var):
            expr = gurobipy.LinExpr(1., expr)
        self.gurobi_model.setObjective(expr, sense=sense)

    def optimize(self, options):
        """
        Solve with the given options. gurobipy.GurobiError propagates to the
        caller.
        @return SolveStatus
        """
        options.apply(self.gurobi_model)
        self.gurobi_model.optimize()
        return solve_status(self.gurobi_model.status)

    def solve(self):
        """
        The search solve, run once after the model is assembled.
        @return SolveStatus
        """
        return self.optimize(self.search_options)

    def objective_bound(self):
        """
        The proven bound on the objective after the last solve, or None if
        the solver did not prove one. For a model without binary variables
        only an optimal solve proves a bound.
        """
        model = self.gurobi_model
        try:
            if model.IsMIP:
                return from_gurobi_bound(model.ObjBound)
            if model.status == gurobipy.GRB.Status.OPTIMAL:
                return float(model.ObjVal)
        except (gurobipy.GurobiError, AttributeError):
            pass
        return None

    def objective_value(self):
        """
        The objective of the incumbent after the last solve, or None if there
        is no feasible solution.
        """
        if self.gurobi_model.SolCount == 0:
            return None
        return float(self.gurobi_model.ObjVal)

    @property
    def num_vars(self):
        return len(self.variables)

    @property
    def num_binary(self):
        return len(self.zeta)

    @property
    def num_constrs(self):
        self.gurobi_model.update()
        return self.gurobi_model.NumConstrs

    def to_blob(self):
        """
        Serialize the model (variables with their names, bounds and types,
        constraints and objective) through the solver's MPS writer.
        """
        self.gurobi_model.update()
        with tempfile.TemporaryDirectory() as tmp_dir:
            file_name = os.path.join(tmp_dir, "model.mps")
            self.gurobi_model.write(file_name)
            with open(file_name, "rb") as f:
                return f.read()

    @classmethod
    def from_blob(cls, blob, build_options=None, search_options=None):
        """
        Inverse of to_blob().
        """
        assert (isinstance(blob, bytes))
        with tempfile.TemporaryDirectory() as tmp_dir:
            file_name = os.path.join(tmp_dir, "model.mps")
            with open(file_name, "wb") as f:
                f.write(blob)
            gurobi_model = gurobipy.read(file_name)
        return cls(build_options, search_options, gurobi_model)
