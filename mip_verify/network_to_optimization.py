"""
Apply the layers of a StandardNeuralNetParameters network to a tensor.

Every function here works on two kinds of tensors: a concrete tensor (a
numpy float64 array) and a symbolic tensor (a numpy object array whose
entries are gurobipy.Var or gurobipy.LinExpr belonging to one
VerificationMIP). The affine layers only build expressions; the
rectification and max pooling call the mixed-integer encoders in utils.
Image tensors are laid out as (batch, height, width, channels).
"""
import math

import gurobipy
import numpy as np
import torch

import mip_verify.layer_parameters as layer_parameters
import mip_verify.utils as utils
from mip_verify.layer_parameters import ShapeMismatch


def as_tensor(x):
    if isinstance(x, torch.Tensor):
        return x.detach().cpu().numpy().astype(np.float64)
    if isinstance(x, np.ndarray) and x.dtype == object:
        return x
    x = np.asarray(x)
    if x.dtype == object:
        return x
    return x.astype(np.float64)


def is_symbolic_tensor(x):
    return isinstance(x, np.ndarray) and x.dtype == object


def _print(mip, message):
    if mip is not None and mip.verbose:
        print(message)


def _new_sum(symbolic):
    return gurobipy.LinExpr() if symbolic else 0.


def _increment(s, input_val, coeff):
    """
    Return s + input_val * coeff. If s is a gurobipy.LinExpr it is modified
    in place.
    """
    if isinstance(s, gurobipy.LinExpr):
        if isinstance(input_val, gurobipy.Var):
            s.addTerms(coeff, input_val)
        elif isinstance(input_val, gurobipy.LinExpr):
            s.add(input_val, coeff)
        else:
            s.addConstant(coeff * float(input_val))
        return s
    return s + input_val * coeff


def _add_constant(s, constant):
    if isinstance(s, gurobipy.LinExpr):
        s.addConstant(constant)
        return s
    return s + constant


def conv2d(x, params, mip=None):
    """
    Compute the "same" correlation of x with the filter, plus the bias. The
    output has the same height and width as x. Along a dimension with filter
    size k, output index i reads the inputs
    i - (ceil(k/2) - 1), ..., i + k - ceil(k/2), with zero padding.
    @param x A 4-D tensor (batch, in_height, in_width, in_channels).
    @param params Conv2DParameters
    @return A 4-D tensor (batch, in_height, in_width, out_channels).
    """
    assert (isinstance(params, layer_parameters.Conv2DParameters))
    x = as_tensor(x)
    if len(x.shape) != 4:
        raise ShapeMismatch(f"conv2d expects a 4-D input, got shape " +
                            f"{x.shape}.")
    (batch, in_height, in_width, in_channels) = x.shape
    (filter_height, filter_width, filter_in_channels,
     out_channels) = params.filter.shape
    if in_channels != filter_in_channels:
        raise ShapeMismatch(
            f"Number of channels in input, {in_channels}, does not match " +
            f"number of channels, {filter_in_channels}, that filters " +
            "operate on.")
    symbolic = is_symbolic_tensor(x)
    _print(mip, "Setting convolution constraints ...")
    # The first input row read by output row i is i - (height_offset - 1).
    height_offset = math.ceil(filter_height / 2)
    width_offset = math.ceil(filter_width / 2)
    output_shape = (batch, in_height, in_width, out_channels)
    output = np.empty(output_shape, dtype=object if symbolic else np.float64)
    for (b, i, j, k) in np.ndindex(output_shape):
        s = _new_sum(symbolic)
        for fi in range(filter_height):
            x_i = i + fi - (height_offset - 1)
            if x_i < 0 or x_i >= in_height:
                continue
            for fj in range(filter_width):
                x_j = j + fj - (width_offset - 1)
                if x_j < 0 or x_j >= in_width:
                    continue
                for c in range(in_channels):
                    coeff = float(params.filter[fi, fj, c, k])
                    if coeff != 0:
                        s = _increment(s, x[b, x_i, x_j, c], coeff)
        output[b, i, j, k] = _add_constant(s, float(params.bias[k]))
    return output


def matmul(x, params, mip=None):
    """
    Compute matrix * x + bias.
    @param x A 1-D tensor of length in_features.
    @param params MatrixMultiplicationParameters
    """
    assert (isinstance(params,
                       layer_parameters.MatrixMultiplicationParameters))
    x = as_tensor(x)
    if x.shape != (params.in_features, ):
        raise ShapeMismatch(
            f"Number of columns in matrix, {params.in_features}, does not " +
            f"match number of rows in input, {x.shape}.")
    symbolic = is_symbolic_tensor(x)
    if not symbolic:
        return params.matrix @ x + params.bias
    output = np.empty((params.out_features, ), dtype=object)
    for i in range(params.out_features):
        s = gurobipy.LinExpr()
        for j in range(params.in_features):
            coeff = float(params.matrix[i, j])
            if coeff != 0:
                s = _increment(s, x[j], coeff)
        output[i] = _add_constant(s, float(params.bias[i]))
    return output


def get_slice_index(input_size, stride, output_index):
    """
    The input indices pooled into output_index along one dimension. The last
    window is truncated to the input, and is empty if it lies outside.
    """
    return range(output_index * stride,
                 min((output_index + 1) * stride, input_size))


def get_output_size(input_shape, strides):
    assert (len(input_shape) == len(strides))
    return tuple(
        math.ceil(size / stride) for size, stride in zip(input_shape, strides))


def get_pool_view(x, strides, output_index):
    """
    The window of x pooled into output_index.
    """
    return x[tuple(
        slice(index_range.start, index_range.stop)
        for index_range in (get_slice_index(size, stride, index)
                            for size, stride, index in zip(
                                x.shape, strides, output_index)))]


def pool_map(f, x, strides):
    """
    Apply f to every pooling window of x.
    """
    x = as_tensor(x)
    if len(strides) != len(x.shape):
        raise ShapeMismatch(f"Pool strides {strides} do not match the " +
                            f"input shape {x.shape}.")
    output_shape = get_output_size(x.shape, strides)
    output = np.empty(output_shape,
                      dtype=object if is_symbolic_tensor(x) else np.float64)
    for output_index in np.ndindex(output_shape):
        output[output_index] = f(get_pool_view(x, strides, output_index))
    return output


def maxpool(x, params, mip=None):
    assert (isinstance(params, layer_parameters.PoolParameters))
    x = as_tensor(x)
    if not is_symbolic_tensor(x):
        return pool_map(np.max, x, params.strides)
    _print(mip, "Setting maxpool constraints ...")
    return pool_map(lambda window: utils.maximum(window, mip), x,
                    params.strides)


def _average(window):
    if not is_symbolic_tensor(window):
        return float(np.mean(window))
    s = gurobipy.LinExpr()
    coeff = 1. / window.size
    for entry in np.ravel(window):
        s = _increment(s, entry, coeff)
    return s


def avgpool(x, params, mip=None):
    """
    Average pooling. This is affine, so it never adds constraints.
    """
    assert (isinstance(params, layer_parameters.PoolParameters))
    return pool_map(_average, x, params.strides)


def relu_with_tightness_slack(x, tightness_slack=0., mip=None):
    """
    Rectify every entry of the tensor x.
    @return (x_rect, tightness_slack)
    """
    x = as_tensor(x)
    if not is_symbolic_tensor(x):
        return np.maximum(x, 0.), tightness_slack
    _print(mip, "Setting rectified linearity constraints ...")
    output = np.empty(x.shape, dtype=object)
    for index in np.ndindex(x.shape):
        output[index], tightness_slack = utils.relu_with_tightness_slack(
            x[index], tightness_slack, mip)
    return output, tightness_slack


def relu(x, mip=None):
    return relu_with_tightness_slack(x, 0., mip)[0]


def flatten(x):
    """
    Flatten x into a vector by reversing the order of the dimensions and then
    reading the entries in column major order. This is the same as reading
    (batch, height, width, channels) in row major order, which is the order
    of the exported fully connected weights.
    """
    x = as_tensor(x)
    return np.transpose(x, tuple(reversed(range(len(x.shape))))).reshape(
        -1, order="F")


def convolution_layer(x, params, mip=None, tightness_slack=0.):
    """
    Convolution, followed by max pooling, followed by rectification.
    @return (output, tightness_slack)
    """
    assert (isinstance(params, layer_parameters.ConvolutionLayerParameters))
    x_conv = conv2d(x, params.conv2d_params, mip)
    x_pool = maxpool(x_conv, params.pool_params, mip)
    return relu_with_tightness_slack(x_pool, tightness_slack, mip)


def fully_connected_layer(x, params, mip=None, tightness_slack=0.):
    """
    Matrix multiplication followed by rectification.
    @return (output, tightness_slack)
    """
    assert (isinstance(params,
                       layer_parameters.FullyConnectedLayerParameters))
    return relu_with_tightness_slack(matmul(x, params.mm_params, mip),
                                     tightness_slack, mip)


def softmax_layer(x, params, mip=None):
    """
    The logits. No activation is applied.
    """
    assert (isinstance(params, layer_parameters.SoftmaxParameters))
    return matmul(x, params.mm_params, mip)


def apply_network(nn_params, x, mip=None, tightness_slack=0.):
    """
    Apply every layer of the network to x, in order: the convolution layers,
    the flattening (if x is not already a vector), the fully connected
    layers, and the softmax layer.
    @param nn_params StandardNeuralNetParameters
    @param x A concrete or symbolic tensor.
    @param mip The VerificationMIP which the entries of x belong to. Not
    needed if x is concrete.
    @return (logits, tightness_slack)
    """
    assert (isinstance(nn_params,
                       layer_parameters.StandardNeuralNetParameters))
    x = as_tensor(x)
    for params in nn_params.conv_layer_params:
        x, tightness_slack = convolution_layer(x, params, mip,
                                               tightness_slack)
    if len(x.shape) > 1:
        x = flatten(x)
    if x.shape[0] != nn_params.flattened_input_size:
        raise layer_parameters.DimensionIncompatibility(
            f"The flattened input has {x.shape[0]} entries, but the first " +
            f"matrix multiplication layer expects " +
            f"{nn_params.flattened_input_size}.")
    for params in nn_params.fc_layer_params:
        x, tightness_slack = fully_connected_layer(x, params, mip,
                                                   tightness_slack)
    return softmax_layer(x, nn_params.softmax_params, mip), tightness_slack


def forward(nn_params, x):
    """
    Evaluate the network on a concrete input.
    @return A numpy array of logits.
    """
    x = as_tensor(x)
    assert (not is_symbolic_tensor(x))
    return apply_network(nn_params, x)[0]
