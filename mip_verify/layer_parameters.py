import numpy as np
import torch


class ShapeMismatch(ValueError):
    pass


class DimensionIncompatibility(ValueError):
    pass


def _to_numpy(value, name):
    """
    Copy a torch tensor, numpy array or nested list into a read-only float64
    numpy array.
    """
    if isinstance(value, torch.Tensor):
        array = value.detach().cpu().numpy().astype(np.float64)
    else:
        array = np.array(value, dtype=np.float64)
    if not np.all(np.isfinite(array)):
        raise ValueError(f"{name} contains non-finite entries.")
    array.flags.writeable = False
    return array


def check_size(value, expected_size):
    """
    Raise ShapeMismatch if value (an array, or a layer parameter object) does
    not have the expected size.
    For Conv2DParameters the expected size is (filter_height, filter_width,
    in_channels, out_channels); for MatrixMultiplicationParameters it is
    (out_features, in_features).
    """
    if isinstance(value, (ConvolutionLayerParameters)):
        check_size(value.conv2d_params, expected_size)
    elif isinstance(value, Conv2DParameters):
        check_size(value.filter, expected_size)
        check_size(value.bias, (expected_size[3], ))
    elif isinstance(value, (FullyConnectedLayerParameters,
                            SoftmaxParameters)):
        check_size(value.mm_params, expected_size)
    elif isinstance(value, MatrixMultiplicationParameters):
        check_size(value.matrix, expected_size)
        check_size(value.bias, (expected_size[0], ))
    else:
        actual_size = tuple(np.shape(value))
        if actual_size != tuple(expected_size):
            raise ShapeMismatch(f"Input size {actual_size} did not match " +
                                f"expected size {tuple(expected_size)}.")


class LayerParameters:
    """
    Base class of the learned coefficients of one layer. All layer parameters
    are constructed once from trained values and never modified afterwards.
    """
    pass


class Conv2DParameters(LayerParameters):
    def __init__(self, filter, bias=None):
        """
        @param filter A 4-D array of size (filter_height, filter_width,
        in_channels, out_channels).
        @param bias A 1-D array of length out_channels. If None, the bias is
        zero.
        """
        self.filter = _to_numpy(filter, "filter")
        if len(self.filter.shape) != 4:
            raise ShapeMismatch("Convolution filter must be 4-D, got shape " +
                                f"{self.filter.shape}.")
        filter_out_channels = self.filter.shape[3]
        if bias is None:
            bias = np.zeros((filter_out_channels, ))
        self.bias = _to_numpy(bias, "bias")
        if self.bias.shape != (filter_out_channels, ):
            raise ShapeMismatch(
                "For the convolution layer, number of output channels in " +
                f"filter, {filter_out_channels}, does not match number of " +
                f"output channels in bias, {self.bias.shape}.")

    @property
    def in_channels(self):
        return self.filter.shape[2]

    @property
    def out_channels(self):
        return self.filter.shape[3]

    def __str__(self):
        return f"Conv2D with filter {self.filter.shape}"


class PoolParameters(LayerParameters):
    """
    Non-overlapping pooling windows. strides[i] is the window size along
    dimension i. The last window along a dimension is truncated to the tensor
    bounds and never padded.
    """
    def __init__(self, strides):
        self.strides = tuple(int(s) for s in strides)
        if any(s < 1 for s in self.strides):
            raise ValueError(f"Pool strides must be positive, got " +
                             f"{self.strides}.")

    def __str__(self):
        return f"Pool with strides {self.strides}"


class MatrixMultiplicationParameters(LayerParameters):
    def __init__(self, matrix, bias):
        """
        Computes matrix * x + bias.
        @param matrix A 2-D array of size (out_features, in_features).
        @param bias A 1-D array of length out_features.
        """
        self.matrix = _to_numpy(matrix, "matrix")
        if len(self.matrix.shape) != 2:
            raise ShapeMismatch(f"Matrix must be 2-D, got shape " +
                                f"{self.matrix.shape}.")
        self.bias = _to_numpy(bias, "bias")
        if self.bias.shape != (self.matrix.shape[0], ):
            raise ShapeMismatch(
                "Number of output channels in matrix, " +
                f"{self.matrix.shape[0]}, does not match number of output " +
                f"channels in bias, {self.bias.shape}.")

    @property
    def in_features(self):
        return self.matrix.shape[1]

    @property
    def out_features(self):
        return self.matrix.shape[0]

    def __str__(self):
        return f"MatrixMultiplication with matrix {self.matrix.shape}"


class ConvolutionLayerParameters(LayerParameters):
    """
    Convolution, followed by max pooling, followed by rectification.
    """
    def __init__(self, conv2d_params, pool_params):
        assert (isinstance(conv2d_params, Conv2DParameters))
        assert (isinstance(pool_params, PoolParameters))
        if len(pool_params.strides) != 4:
            raise ShapeMismatch("Pooling after a convolution needs 4 " +
                                f"strides, got {pool_params.strides}.")
        self.conv2d_params = conv2d_params
        self.pool_params = pool_params

    @classmethod
    def from_arrays(cls, filter, bias, strides):
        return cls(Conv2DParameters(filter, bias), PoolParameters(strides))


class FullyConnectedLayerParameters(LayerParameters):
    """
    Matrix multiplication followed by rectification.
    """
    def __init__(self, mm_params):
        assert (isinstance(mm_params, MatrixMultiplicationParameters))
        self.mm_params = mm_params

    @classmethod
    def from_arrays(cls, matrix, bias):
        return cls(MatrixMultiplicationParameters(matrix, bias))


class SoftmaxParameters(LayerParameters):
    """
    The terminal layer, computing the logits. There is no activation.
    """
    def __init__(self, mm_params):
        assert (isinstance(mm_params, MatrixMultiplicationParameters))
        self.mm_params = mm_params

    @classmethod
    def from_arrays(cls, matrix, bias):
        return cls(MatrixMultiplicationParameters(matrix, bias))


class StandardNeuralNetParameters:
    """
    A chain of convolution layers, then fully connected layers, then exactly
    one softmax (logits) layer. The UUID identifies the trained network and
    is part of the model cache key.
    """
    def __init__(self, conv_layer_params, fc_layer_params, softmax_params,
                 UUID):
        assert (isinstance(conv_layer_params, list))
        assert (isinstance(fc_layer_params, list))
        assert (all(
            isinstance(p, ConvolutionLayerParameters)
            for p in conv_layer_params))
        assert (all(
            isinstance(p, FullyConnectedLayerParameters)
            for p in fc_layer_params))
        assert (isinstance(softmax_params, SoftmaxParameters))
        assert (isinstance(UUID, str) and len(UUID) > 0)
        self.conv_layer_params = list(conv_layer_params)
        self.fc_layer_params = list(fc_layer_params)
        self.softmax_params = softmax_params
        self.UUID = UUID
        self._check_dimensions()

    def _check_dimensions(self):
        for i in range(1, len(self.conv_layer_params)):
            previous = self.conv_layer_params[i - 1].conv2d_params
            current = self.conv_layer_params[i].conv2d_params
            if current.in_channels != previous.out_channels:
                raise DimensionIncompatibility(
                    f"Convolution layer {i} expects {current.in_channels} " +
                    f"input channels, but layer {i-1} outputs " +
                    f"{previous.out_channels} channels.")
        mm_chain = [p.mm_params for p in self.fc_layer_params] +\
            [self.softmax_params.mm_params]
        for i in range(1, len(mm_chain)):
            if mm_chain[i].in_features != mm_chain[i - 1].out_features:
                raise DimensionIncompatibility(
                    f"Matrix multiplication layer {i} expects " +
                    f"{mm_chain[i].in_features} inputs, but layer {i-1} " +
                    f"outputs {mm_chain[i-1].out_features}.")

    @property
    def num_outputs(self):
        return self.softmax_params.mm_params.out_features

    @property
    def flattened_input_size(self):
        """
        The number of entries the first matrix multiplication layer expects.
        """
        if len(self.fc_layer_params) > 0:
            return self.fc_layer_params[0].mm_params.in_features
        return self.softmax_params.mm_params.in_features

    def __str__(self):
        return f"StandardNeuralNetParameters {self.UUID} with " +\
            f"{len(self.conv_layer_params)} convolution layers, " +\
            f"{len(self.fc_layer_params)} fully connected layers and " +\
            f"{self.num_outputs} outputs"


def from_torch_linear(linear):
    """
    Build MatrixMultiplicationParameters from a torch.nn.Linear module. The
    weight of nn.Linear is already (out_features, in_features).
    """
    assert (isinstance(linear, torch.nn.Linear))
    bias = linear.bias if linear.bias is not None else torch.zeros(
        (linear.out_features, ), dtype=linear.weight.dtype)
    return MatrixMultiplicationParameters(linear.weight, bias)


def from_torch_conv2d(conv):
    """
    Build Conv2DParameters from a torch.nn.Conv2d module. torch stores the
    weight as (out_channels, in_channels, height, width); we permute it to
    (height, width, in_channels, out_channels). Only unit stride, unit
    dilation and a single group are supported.
    """
    assert (isinstance(conv, torch.nn.Conv2d))
    if tuple(conv.stride) != (1, 1) or tuple(conv.dilation) != (1, 1) or\
            conv.groups != 1:
        raise ValueError("from_torch_conv2d: only stride 1, dilation 1 and " +
                         "groups 1 are supported.")
    return Conv2DParameters(conv.weight.permute(2, 3, 1, 0), conv.bias)


def get_matrix_params(param_dict,
                      layer_name,
                      expected_size,
                      matrix_name="weight",
                      bias_name="bias"):
    """
    Look up the parameters of a matrix multiplication layer from a dictionary
    of exported values. The exporter stores the weight as
    (in_features, out_features), so it is transposed here.
    @param expected_size (out_features, in_features)
    """
    matrix = np.transpose(
        _to_numpy(param_dict[f"{layer_name}/{matrix_name}"], matrix_name))
    bias = _squeeze_leading(
        _to_numpy(param_dict[f"{layer_name}/{bias_name}"], bias_name))
    params = MatrixMultiplicationParameters(matrix, bias)
    check_size(params, expected_size)
    return params


def get_conv_params(param_dict,
                    layer_name,
                    expected_size,
                    matrix_name="weight",
                    bias_name="bias"):
    """
    Look up the parameters of a convolution from a dictionary of exported
    values.
    @param expected_size (filter_height, filter_width, in_channels,
    out_channels)
    """
    params = Conv2DParameters(
        param_dict[f"{layer_name}/{matrix_name}"],
        _squeeze_leading(
            _to_numpy(param_dict[f"{layer_name}/{bias_name}"], bias_name)))
    check_size(params, expected_size)
    return params


def _squeeze_leading(array):
    if len(array.shape) == 2 and array.shape[0] == 1:
        return array[0]
    return array


def get_input(x, test_index):
    """
    Return sample test_index of a batch of images, keeping a leading batch
    dimension of size 1.
    """
    return np.asarray(x)[test_index:test_index + 1]


def get_label(y, test_index):
    """
    Return the label of sample test_index from a one-hot label matrix.
    """
    return int(np.argmax(np.asarray(y)[test_index]))
