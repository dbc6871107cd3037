import enum
import inspect

import gurobipy
import numpy as np

import mip_verify.gurobi_verification_mip as gurobi_verification_mip
import mip_verify.layer_parameters as layer_parameters
import mip_verify.mip_utils as mip_utils
import mip_verify.model_cache as model_cache
import mip_verify.network_to_optimization as network_to_optimization
import mip_verify.utils as utils
from mip_verify.gurobi_verification_mip import SolveStatus


class TargetConstraint(enum.Enum):
    # The target label must be the maximal logit.
    MAX = 1
    # The target label must not be the maximal logit.
    NOT_MAX = 2


class AdversarialSearchOptions:
    def __init__(self):
        # 1, 2 or np.inf. The norm of the perturbation being minimized.
        self.norm_order = 1
        # The margin between the target logit and the other logits.
        self.tolerance = 0.
        self.target_constraint = TargetConstraint.MAX
        # Build the model from scratch even if the cache holds it.
        self.rebuild = False
        # Use the exact absolute value encoding in the L1 norm. The loose
        # encoding is exact at the optimum, and needs no binary variable.
        self.strict_abs = False
        # The box which the perturbed input has to stay in.
        self.base_lo = 0.
        self.base_up = 1.
        self.verbose = False
        self.build_options = gurobi_verification_mip.build_phase_options()
        self.search_options = gurobi_verification_mip.search_phase_options()

    def print(self):
        for attr in inspect.getmembers(self):
            if not attr[0].startswith('_') and not inspect.ismethod(attr[1]):
                print(f"{attr[0]}: {attr[1]}")


class AdversarialSearchResult:
    """
    The outcome of find_adversarial_example.
    If the solver found a feasible solution (status OPTIMAL, or
    RESOURCE_LIMIT with an incumbent), perturbation, perturbed_input,
    perturbation_norm and output hold its values; otherwise they are None.
    objective_bound is the proven lower bound on the norm objective (for the
    L2 norm, on the sum of squares).
    """
    def __init__(self, status, message=None):
        assert (isinstance(status, SolveStatus))
        self.status = status
        self.message = message
        self.perturbation = None
        self.perturbed_input = None
        self.perturbation_norm = None
        self.output = None
        self.objective_value = None
        self.objective_bound = None

    @property
    def found(self):
        return self.perturbation is not None

    def __str__(self):
        return f"AdversarialSearchResult(status={self.status.name}, " +\
            f"perturbation_norm={self.perturbation_norm}, " +\
            f"objective_bound={self.objective_bound})"


def _perturbation_kind(base_lo, base_up):
    return f"additive[{float(base_lo)},{float(base_up)}]"


def _var_name(prefix, index):
    return prefix + "".join(f"_{i}" for i in index)


def _add_named_vars(mip, prefix, shape, lb=-np.inf, ub=np.inf):
    v = np.empty(shape, dtype=object)
    for index in np.ndindex(shape):
        v[index] = mip.addVar(lb=lb, ub=ub, name=_var_name(prefix, index))
    return v


def _get_named_vars(mip, prefix, shape):
    v = np.empty(shape, dtype=object)
    for index in np.ndindex(shape):
        name = _var_name(prefix, index)
        v[index] = mip.gurobi_model.getVarByName(name)
        if v[index] is None:
            raise KeyError(f"The cached model has no variable {name}.")
    return v


def initialize_additive_uncached(nn_params,
                                 input_size,
                                 build_options=None,
                                 search_options=None,
                                 base_lo=0.,
                                 base_up=1.,
                                 verbose=False):
    """
    Build the model of the network applied to base = input + perturbation,
    where base is confined to [base_lo, base_up]. input is left free, so the
    same model can be reused for every input of the same size.
    @return A dictionary with the VerificationMIP in "model", and the
    variable arrays "input", "perturbation", "base" of size input_size,
    "output" (the logits) and the variable "tightness slack".
    """
    assert (isinstance(nn_params,
                       layer_parameters.StandardNeuralNetParameters))
    input_size = tuple(int(s) for s in input_size)
    mip = gurobi_verification_mip.VerificationMIP(build_options,
                                                  search_options)
    mip.verbose = verbose
    v_input = _add_named_vars(mip, "input", input_size)
    v_e = _add_named_vars(mip, "perturbation", input_size)
    v_x0 = _add_named_vars(mip, "base", input_size, base_lo, base_up)
    for index in np.ndindex(input_size):
        mip.addLConstr(v_x0[index], gurobipy.GRB.EQUAL,
                       v_input[index] + v_e[index])

    logits, tightness_slack = network_to_optimization.apply_network(
        nn_params, v_x0, mip)

    v_output = np.empty(logits.shape, dtype=object)
    for i in range(logits.shape[0]):
        lo, up = mip_utils.interval_bounds(logits[i])
        v_output[i] = mip.addVar(lb=lo, ub=up, name=_var_name("output", (i, )))
        mip.addLConstr(v_output[i], gurobipy.GRB.EQUAL, logits[i])
    v_slack = mip.addVar(name="tightness_slack")
    mip.addLConstr(v_slack, gurobipy.GRB.EQUAL, tightness_slack)
    return {
        "model": mip,
        "input": v_input,
        "perturbation": v_e,
        "base": v_x0,
        "output": v_output,
        "tightness slack": v_slack
    }


def _load_handles(mip, nn_params, input_size):
    return {
        "model": mip,
        "input": _get_named_vars(mip, "input", input_size),
        "perturbation": _get_named_vars(mip, "perturbation", input_size),
        "base": _get_named_vars(mip, "base", input_size),
        "output": _get_named_vars(mip, "output", (nn_params.num_outputs, )),
        "tightness slack": _get_named_vars(mip, "tightness_slack", ())[()]
    }


def initialize_additive(nn_params,
                        input_size,
                        cache=None,
                        rebuild=False,
                        build_options=None,
                        search_options=None,
                        base_lo=0.,
                        base_up=1.,
                        verbose=False):
    """
    Same as initialize_additive_uncached, but reuses the model stored in
    cache under (network UUID, input size, perturbation kind, encoding
    version) unless rebuild is True. A newly built model is stored in the
    cache. A cached model is reused whatever build_options are given, since
    they only affect how tight its bounds are.
    @param cache A ModelCache, or None to always build the model.
    """
    input_size = tuple(int(s) for s in input_size)
    key = model_cache.ModelCacheKey(nn_params.UUID, input_size,
                                    _perturbation_kind(base_lo, base_up))
    if cache is not None and not rebuild and key in cache:
        if verbose:
            print("Loading model from cache.")
        mip = gurobi_verification_mip.VerificationMIP.from_blob(
            cache.get(key), build_options, search_options)
        mip.verbose = verbose
        return _load_handles(mip, nn_params, input_size)
    if verbose:
        print("Rebuilding model from scratch.")
    d = initialize_additive_uncached(nn_params, input_size, build_options,
                                     search_options, base_lo, base_up,
                                     verbose)
    if cache is not None:
        cache.put(key, d["model"].to_blob())
    return d


def set_input_constraint(d, input):
    """
    Fix the "input" variables to a concrete input. The bounds of the
    perturbation follow from base = input + perturbation.
    @param d The dictionary returned by initialize_additive.
    @param input A concrete tensor of the size the model was built for.
    """
    mip = d["model"]
    input = network_to_optimization.as_tensor(input)
    layer_parameters.check_size(input, d["input"].shape)
    for index in np.ndindex(input.shape):
        value = float(input[index])
        mip.addLConstr(d["input"][index], gurobipy.GRB.EQUAL, value)
        base_lo, base_up = mip_utils.interval_bounds(d["base"][index])
        mip.set_var_bounds(d["perturbation"][index], base_lo - value,
                           base_up - value)


def find_adversarial_example(nn_params,
                             input,
                             target_index,
                             options=None,
                             cache=None):
    """
    Find the perturbation of input with the smallest norm, such that the
    network output satisfies the target constraint on target_index.
    @param nn_params StandardNeuralNetParameters
    @param input A concrete tensor, including the batch dimension for
    convolutional networks.
    @param target_index 0-based index of the target label.
    @param options AdversarialSearchOptions
    @param cache A ModelCache, or None.
    @return AdversarialSearchResult
    """
    if options is None:
        options = AdversarialSearchOptions()
    assert (isinstance(options, AdversarialSearchOptions))
    assert (isinstance(options.target_constraint, TargetConstraint))
    input = network_to_optimization.as_tensor(input)
    d = initialize_additive(nn_params, input.shape, cache, options.rebuild,
                            options.build_options, options.search_options,
                            options.base_lo, options.base_up,
                            options.verbose)
    mip = d["model"]

    set_input_constraint(d, input)
    if options.target_constraint == TargetConstraint.MAX:
        utils.set_max_index(d["output"], target_index, options.tolerance,
                            mip)
    else:
        utils.set_unmax_index(d["output"], target_index, options.tolerance,
                              mip)
    e_norm = utils.get_norm(options.norm_order, d["perturbation"], mip,
                            options.strict_abs)
    mip.setObjective(e_norm, gurobipy.GRB.MINIMIZE)

    if options.verbose:
        predicted = utils.get_max_index(
            network_to_optimization.forward(nn_params, input))
        print("Attempting to find adversarial example. Neural net " +
              f"predicted label is {predicted}, target label is " +
              f"{target_index}")
    try:
        status = mip.solve()
    except gurobipy.GurobiError as err:
        return AdversarialSearchResult(SolveStatus.ERROR, str(err))
    result = AdversarialSearchResult(status)
    if status == SolveStatus.OPTIMAL or status == SolveStatus.RESOURCE_LIMIT:
        # Every norm objective is nonnegative.
        objective_bound = mip.objective_bound()
        if objective_bound is not None:
            objective_bound = max(0., objective_bound)
        result.objective_bound = objective_bound
        result.objective_value = mip.objective_value()
        if result.objective_value is not None:
            result.perturbation = utils.get_value(d["perturbation"])
            result.perturbed_input = utils.get_value(d["base"])
            result.perturbation_norm = utils.get_norm(options.norm_order,
                                                      result.perturbation)
            result.output = utils.get_value(d["output"])
    if options.verbose:
        print(result)
    return result
