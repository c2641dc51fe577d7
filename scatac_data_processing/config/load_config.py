# load the yml file into a config object
import copy
import os

import yaml

DEFAULT_CONFIG = os.path.join(os.path.dirname(os.path.abspath(__file__)), "default.yaml")


class Config:
    def __init__(self, **entries):
        for key, value in entries.items():
            if isinstance(value, dict):
                value = Config(**{str(k): v for k, v in value.items()})
            self.__dict__[key] = value
    def __getitem__(self, key):
        return self.__dict__.get(key, None)
    def __setitem__(self, key, value):
        self.__dict__[key] = value
    def __getattr__(self, item):
        if item.startswith("__"):
            raise AttributeError(item)
        if item not in self.__dict__:
            self.__dict__[item] = Config()
        return self.__dict__[item]
    def __contains__(self, key):
        return key in self.__dict__
    def __repr__(self):
        return f"Config({self.__dict__})"
    def get(self, key, default=None):
        return self.__dict__.get(key, default)
    def to_dict(self):
        return {key: value.to_dict() if isinstance(value, Config) else value for key, value in self.__dict__.items()}


# mappings a run config gives in full, they replace the defaults instead of being merged into them
REPLACED_KEYS = {("qc", "metrics"), ("clustering", "labels")}


def merge_dict(base, update, path=()):
    """Recursively merge `update` into a copy of `base`."""
    merged = copy.deepcopy(base)
    for key, value in update.items():
        replaced = path + (key,) in REPLACED_KEYS
        if isinstance(value, dict) and isinstance(merged.get(key), dict) and not replaced:
            merged[key] = merge_dict(merged[key], value, path + (key,))
        else:
            merged[key] = value
    return merged


def read_yaml(conf):
    if not conf.endswith((".yaml", ".yml")):
        conf = f"{conf}.yaml"
    if not os.path.exists(conf):
        raise FileNotFoundError(f"Config file {conf} does not exist")
    with open(conf, "r") as f:
        return yaml.safe_load(f) or {}


def load_config(conf=None, **overrides):
    """Load the packaged defaults, layer the user yaml file and keyword overrides on top."""
    config_data = read_yaml(DEFAULT_CONFIG)
    if conf is not None:
        config_data = merge_dict(config_data, read_yaml(conf))
    if overrides:
        config_data = merge_dict(config_data, overrides)
    return Config(**config_data)
