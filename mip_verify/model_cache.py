import hashlib
import os
import re

import torch

# Bump whenever an encoder changes the structure of the built model, so that
# models built by an older encoder are never reused.
ENCODING_VERSION = 1


class ModelCacheKey:
    """
    Everything that identifies a built model. The build-phase solver options
    are not part of the key: they decide how tight the bounds of the stored
    model are (and so which rectifications get a binary variable), but any
    model stored under the key is a sound encoding of the network. Pass
    rebuild=True to initialize_additive to tighten a cached model with
    different build options.
    """
    def __init__(self,
                 network_id,
                 input_shape,
                 perturbation_kind,
                 encoding_version=ENCODING_VERSION):
        assert (isinstance(network_id, str))
        assert (isinstance(perturbation_kind, str))
        self.network_id = network_id
        self.input_shape = tuple(int(s) for s in input_shape)
        self.perturbation_kind = perturbation_kind
        self.encoding_version = int(encoding_version)

    def as_tuple(self):
        return (self.network_id, self.input_shape, self.perturbation_kind,
                self.encoding_version)

    def __eq__(self, other):
        return isinstance(other, ModelCacheKey) and\
            self.as_tuple() == other.as_tuple()

    def __hash__(self):
        return hash(self.as_tuple())

    def __repr__(self):
        return f"ModelCacheKey{self.as_tuple()}"

    def digest(self):
        """
        A stable name for the artifact, usable as a file name.
        """
        readable = re.sub(r"[^A-Za-z0-9_\-]", "_", self.network_id)
        text = repr(self.as_tuple()).encode("utf-8")
        return f"{readable}.{hashlib.sha256(text).hexdigest()[:16]}"


class ModelCache:
    """
    A key -> blob store for built models.
    """
    def __contains__(self, key):
        raise NotImplementedError

    def get(self, key):
        raise NotImplementedError

    def put(self, key, blob):
        raise NotImplementedError


class InMemoryModelCache(ModelCache):
    def __init__(self):
        self.blobs = {}

    def __contains__(self, key):
        return key in self.blobs

    def get(self, key):
        return self.blobs[key]

    def put(self, key, blob):
        assert (isinstance(blob, bytes))
        self.blobs[key] = blob


class DirectoryModelCache(ModelCache):
    """
    Stores every blob in its own file under root, together with its key.
    """
    def __init__(self, root):
        self.root = root

    def path(self, key):
        return os.path.join(self.root, key.digest() + ".pt")

    def __contains__(self, key):
        return os.path.isfile(self.path(key))

    def get(self, key):
        data = torch.load(self.path(key), weights_only=False)
        if data["key"] != key.as_tuple():
            raise KeyError(f"{self.path(key)} stores the model of " +
                           f"{data['key']}, not of {key}.")
        return data["model"]

    def put(self, key, blob):
        assert (isinstance(blob, bytes))
        os.makedirs(self.root, exist_ok=True)
        torch.save({"key": key.as_tuple(), "model": blob}, self.path(key))
