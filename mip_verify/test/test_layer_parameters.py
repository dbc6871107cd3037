import mip_verify.layer_parameters as layer_parameters

import unittest

import numpy as np
import torch


class TestConv2DParameters(unittest.TestCase):
    def test_default_bias(self):
        params = layer_parameters.Conv2DParameters(np.ones((3, 3, 2, 4)))
        np.testing.assert_allclose(params.bias, np.zeros((4, )))
        self.assertEqual(params.in_channels, 2)
        self.assertEqual(params.out_channels, 4)

    def test_bias_mismatch(self):
        with self.assertRaises(layer_parameters.ShapeMismatch):
            layer_parameters.Conv2DParameters(np.ones((3, 3, 2, 4)),
                                              np.zeros((3, )))

    def test_filter_not_4d(self):
        with self.assertRaises(layer_parameters.ShapeMismatch):
            layer_parameters.Conv2DParameters(np.ones((3, 3, 2)))

    def test_immutable(self):
        params = layer_parameters.Conv2DParameters(np.ones((2, 2, 1, 1)))
        with self.assertRaises(ValueError):
            params.filter[0, 0, 0, 0] = 2.

    def test_not_finite(self):
        filter = np.ones((2, 2, 1, 1))
        filter[0, 1, 0, 0] = np.nan
        with self.assertRaises(ValueError):
            layer_parameters.Conv2DParameters(filter)


class TestMatrixMultiplicationParameters(unittest.TestCase):
    def test(self):
        params = layer_parameters.MatrixMultiplicationParameters(
            [[1., 2., 3.], [4., 5., 6.]], [1., -1.])
        self.assertEqual(params.in_features, 3)
        self.assertEqual(params.out_features, 2)

    def test_bias_mismatch(self):
        with self.assertRaises(layer_parameters.ShapeMismatch):
            layer_parameters.MatrixMultiplicationParameters(
                np.ones((2, 3)), np.zeros((3, )))

    def test_torch_tensor(self):
        params = layer_parameters.MatrixMultiplicationParameters(
            torch.tensor([[1., 2.]], dtype=torch.float32),
            torch.tensor([0.5], dtype=torch.float32))
        self.assertEqual(params.matrix.dtype, np.float64)
        np.testing.assert_allclose(params.matrix, np.array([[1., 2.]]))


class TestPoolParameters(unittest.TestCase):
    def test(self):
        self.assertEqual(
            layer_parameters.PoolParameters([1, 2, 2, 1]).strides,
            (1, 2, 2, 1))
        with self.assertRaises(ValueError):
            layer_parameters.PoolParameters((1, 0, 2, 1))

    def test_convolution_layer_strides(self):
        with self.assertRaises(layer_parameters.ShapeMismatch):
            layer_parameters.ConvolutionLayerParameters.from_arrays(
                np.ones((3, 3, 1, 2)), np.zeros((2, )), (2, 2))


class TestStandardNeuralNetParameters(unittest.TestCase):
    def setUp(self):
        self.conv1 = layer_parameters.ConvolutionLayerParameters.from_arrays(
            np.ones((3, 3, 1, 2)), np.zeros((2, )), (1, 2, 2, 1))
        self.fc1 = layer_parameters.FullyConnectedLayerParameters.from_arrays(
            np.ones((4, 8)), np.zeros((4, )))
        self.softmax = layer_parameters.SoftmaxParameters.from_arrays(
            np.ones((3, 4)), np.zeros((3, )))

    def test(self):
        nn_params = layer_parameters.StandardNeuralNetParameters(
            [self.conv1], [self.fc1], self.softmax, "net")
        self.assertEqual(nn_params.num_outputs, 3)
        self.assertEqual(nn_params.flattened_input_size, 8)
        self.assertIn("net", str(nn_params))

    def test_empty_layers(self):
        nn_params = layer_parameters.StandardNeuralNetParameters(
            [], [], self.softmax, "net")
        self.assertEqual(nn_params.flattened_input_size, 4)

    def test_matrix_chain_mismatch(self):
        fc2 = layer_parameters.FullyConnectedLayerParameters.from_arrays(
            np.ones((5, 4)), np.zeros((5, )))
        with self.assertRaises(layer_parameters.DimensionIncompatibility):
            layer_parameters.StandardNeuralNetParameters(
                [self.conv1], [self.fc1, fc2], self.softmax, "net")

    def test_conv_chain_mismatch(self):
        conv2 = layer_parameters.ConvolutionLayerParameters.from_arrays(
            np.ones((3, 3, 3, 2)), np.zeros((2, )), (1, 1, 1, 1))
        with self.assertRaises(layer_parameters.DimensionIncompatibility):
            layer_parameters.StandardNeuralNetParameters(
                [self.conv1, conv2], [self.fc1], self.softmax, "net")


class TestFromTorch(unittest.TestCase):
    def test_linear(self):
        torch.manual_seed(0)
        linear = torch.nn.Linear(3, 2)
        params = layer_parameters.from_torch_linear(linear)
        np.testing.assert_allclose(params.matrix,
                                   linear.weight.detach().numpy(),
                                   rtol=1e-6)
        np.testing.assert_allclose(params.bias,
                                   linear.bias.detach().numpy(),
                                   rtol=1e-6)

    def test_linear_no_bias(self):
        linear = torch.nn.Linear(3, 2, bias=False)
        params = layer_parameters.from_torch_linear(linear)
        np.testing.assert_allclose(params.bias, np.zeros((2, )))

    def test_conv2d(self):
        torch.manual_seed(0)
        conv = torch.nn.Conv2d(2, 3, kernel_size=(2, 4))
        params = layer_parameters.from_torch_conv2d(conv)
        self.assertEqual(params.filter.shape, (2, 4, 2, 3))
        weight = conv.weight.detach().numpy()
        for (h, w, c_in, c_out) in np.ndindex(params.filter.shape):
            self.assertAlmostEqual(params.filter[h, w, c_in, c_out],
                                   weight[c_out, c_in, h, w],
                                   places=6)

    def test_conv2d_stride(self):
        conv = torch.nn.Conv2d(1, 1, kernel_size=3, stride=2)
        with self.assertRaises(ValueError):
            layer_parameters.from_torch_conv2d(conv)


class TestParameterLookup(unittest.TestCase):
    def test_get_matrix_params(self):
        # Exported as (in_features, out_features), bias with a leading
        # singleton dimension.
        param_dict = {
            "fc1/weight": np.array([[1., 2.], [3., 4.], [5., 6.]]),
            "fc1/bias": np.array([[0.5, -0.5]])
        }
        params = layer_parameters.get_matrix_params(param_dict, "fc1",
                                                    (2, 3))
        np.testing.assert_allclose(params.matrix,
                                   np.array([[1., 3., 5.], [2., 4., 6.]]))
        np.testing.assert_allclose(params.bias, np.array([0.5, -0.5]))
        with self.assertRaises(layer_parameters.ShapeMismatch):
            layer_parameters.get_matrix_params(param_dict, "fc1", (3, 2))

    def test_get_conv_params(self):
        param_dict = {
            "conv1/weight": np.ones((5, 5, 1, 4)),
            "conv1/bias": np.ones((4, ))
        }
        params = layer_parameters.get_conv_params(param_dict, "conv1",
                                                  (5, 5, 1, 4))
        self.assertEqual(params.out_channels, 4)
        with self.assertRaises(layer_parameters.ShapeMismatch):
            layer_parameters.get_conv_params(param_dict, "conv1",
                                             (3, 3, 1, 4))

    def test_check_size(self):
        layer_parameters.check_size(np.zeros((2, 3)), (2, 3))
        with self.assertRaises(layer_parameters.ShapeMismatch):
            layer_parameters.check_size(np.zeros((2, 3)), (3, 2))

    def test_get_input_label(self):
        x = np.arange(24.).reshape((3, 2, 2, 2))
        y = np.array([[0, 1, 0], [1, 0, 0], [0, 0, 1]])
        x1 = layer_parameters.get_input(x, 1)
        self.assertEqual(x1.shape, (1, 2, 2, 2))
        np.testing.assert_allclose(x1[0], x[1])
        self.assertEqual(layer_parameters.get_label(y, 0), 1)
        self.assertEqual(layer_parameters.get_label(y, 2), 2)


if __name__ == "__main__":
    unittest.main()
