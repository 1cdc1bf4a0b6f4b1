import copy
import logging
import math
import os
from typing import Any, Dict, Optional

import yaml


class IncludeLoader(yaml.Loader):
    """
    YAML loader with `!include` handler.
    """

    def __init__(self, stream):
        self._root = os.path.split(stream.name)[0]
        yaml.Loader.__init__(self, stream)

    def include(self, node):
        """
        Loads the YAML file named by the node, relative to the including file.
        :param node:
        :return:
        """
        filename = os.path.join(self._root, self.construct_scalar(node))
        with open(filename, "r") as f:
            return yaml.load(f, IncludeLoader)


IncludeLoader.add_constructor("!include", IncludeLoader.include)


class RunningStats:
    """
    Streaming estimates of mean, variance, skewness and kurtosis.
    """

    def __init__(self):
        self.n = 0
        self.m1 = 0.0
        self.m2 = 0.0
        self.m3 = 0.0
        self.m4 = 0.0
        self.min = float("inf")
        self.max = float("-inf")

    def clear(self):
        self.n = 0
        self.m1 = 0.0
        self.m2 = 0.0
        self.m3 = 0.0
        self.m4 = 0.0
        self.min = float("inf")
        self.max = float("-inf")

    def update(self, x):
        self.min = min(self.min, x)
        self.max = max(self.max, x)
        n1 = self.n
        self.n += 1
        n = self.n
        delta = x - self.m1
        delta_n = delta / n
        delta_n2 = delta_n * delta_n
        term1 = delta * delta_n * n1
        self.m1 += delta_n
        self.m4 += (
            term1 * delta_n2 * (n * n - 3 * n + 3)
            + 6 * delta_n2 * self.m2
            - 4 * delta_n * self.m3
        )
        self.m3 += term1 * delta_n * (n - 2) - 3 * delta_n * self.m2
        self.m2 += term1

    def mean(self):
        return self.m1

    def variance(self):
        if self.n < 2:
            return 0.0
        return self.m2 / (self.n - 1.0)

    def standard_deviation(self):
        return math.sqrt(self.variance())

    def skewness(self):
        if self.m2 == 0.0:
            return 0.0
        return math.sqrt(self.n) * self.m3 / (self.m2**1.5)

    def kurtosis(self):
        if self.m2 == 0.0:
            return 0.0
        return self.n * self.m4 / (self.m2 * self.m2) - 3.0


def config_logging(verbose):
    if verbose:
        logging.basicConfig(level=logging.INFO)
    else:
        logging.basicConfig(level=logging.WARN)


def get_root_logger():
    logger = logging.getLogger("pyramidal_sim")
    return logger


def get_module_logger(name):
    logger = logging.getLogger("%s" % name)
    return logger


def get_script_logger(name):
    logger = logging.getLogger("pyramidal_sim.%s" % name)
    return logger


# This logger will inherit its settings from the root logger, created in pyramidal_sim.env
logger = get_module_logger(__name__)


def read_from_yaml(file_path, include_loader=None):
    """

    :param file_path: str (should end in '.yaml')
    :return:
    """
    if os.path.isfile(file_path):
        with open(file_path, "r") as stream:
            if include_loader is None:
                Loader = yaml.FullLoader
            else:
                Loader = include_loader
            data = yaml.load(stream, Loader=Loader)
        return data
    else:
        raise IOError("read_from_yaml: invalid file_path: %s" % file_path)


def from_yaml(filepath: str) -> Dict:
    return read_from_yaml(filepath, include_loader=IncludeLoader)


def update_dict(base: Dict, patch: Optional[Dict[str, Any]]) -> Dict:
    """
    Returns a deep copy of `base` with the entries of `patch` merged in
    recursively; dictionaries are merged, all other values are replaced.
    """
    result = copy.deepcopy(base)
    if patch is None:
        return result
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = update_dict(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result
