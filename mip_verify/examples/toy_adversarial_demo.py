import mip_verify.layer_parameters as layer_parameters
import mip_verify.adversarial_search as adversarial_search
import mip_verify.model_cache as model_cache
import mip_verify.network_to_optimization as network_to_optimization
import mip_verify.utils as utils
import numpy as np
import torch
import argparse


def make_toy_network(seed, use_conv):
    """
    A small randomly initialized classifier on 4 x 4 single channel images
    with 3 labels.
    """
    torch.manual_seed(seed)
    fc1 = torch.nn.Linear(8 if use_conv else 16, 6)
    softmax = torch.nn.Linear(6, 3)
    conv_layers = []
    if use_conv:
        conv = torch.nn.Conv2d(1, 2, kernel_size=3, padding=1)
        conv_layers.append(
            layer_parameters.ConvolutionLayerParameters(
                layer_parameters.from_torch_conv2d(conv),
                layer_parameters.PoolParameters((1, 2, 2, 1))))
    return layer_parameters.StandardNeuralNetParameters(
        conv_layers, [
            layer_parameters.FullyConnectedLayerParameters(
                layer_parameters.from_torch_linear(fc1))
        ],
        layer_parameters.SoftmaxParameters(
            layer_parameters.from_torch_linear(softmax)),
        f"toy_{'conv' if use_conv else 'fc'}_{seed}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description="find the smallest perturbation of a random image that " +
        "changes the label predicted by a toy network")
    parser.add_argument("--seed", type=int, default=0)
    parser.add_argument("--conv",
                        action="store_true",
                        help="add a convolution layer")
    parser.add_argument("--norm",
                        type=str,
                        default="1",
                        help="1, 2 or inf")
    parser.add_argument("--tolerance", type=float, default=0.01)
    parser.add_argument("--cache_dir",
                        type=str,
                        default=None,
                        help="directory to store the built models")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()

    nn_params = make_toy_network(args.seed, args.conv)
    print(nn_params)
    np.random.seed(args.seed)
    x = np.random.rand(1, 4, 4, 1)
    if not args.conv:
        x = x.reshape((-1, ))
    predicted = utils.get_max_index(network_to_optimization.forward(
        nn_params, x))

    options = adversarial_search.AdversarialSearchOptions()
    options.norm_order = np.inf if args.norm == "inf" else int(args.norm)
    options.tolerance = args.tolerance
    options.target_constraint = adversarial_search.TargetConstraint.NOT_MAX
    options.verbose = args.verbose
    cache = None if args.cache_dir is None else\
        model_cache.DirectoryModelCache(args.cache_dir)
    result = adversarial_search.find_adversarial_example(
        nn_params, x, predicted, options, cache)
    print(result)
    if result.found:
        logits = network_to_optimization.forward(nn_params,
                                                 result.perturbed_input)
        print(f"predicted label {predicted} -> " +
              f"{utils.get_max_index(logits)}")
